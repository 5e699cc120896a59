"""
Transport-agnostic request handlers.

An HTTP adapter (edge worker, WSGI app, ...) turns its request into
``handle_request(engine, method, path, query, body)`` and writes the returned
Response back out. Artifact bodies are binary file objects to be streamed.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .engine import Engine
from .errors import InvalidInputError, NotFound, NotReady

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
JSON = {"Content-Type": "application/json"}


@dataclass
class Response:
    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


def _json(status: int, payload: Dict) -> Response:
    return Response(status, payload, {**CORS_HEADERS, **JSON})


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def _job_id(path: str, prefix: str, query: Dict, body: Optional[Dict]) -> str:
    rest = path[len(prefix):].strip("/")
    job_id = rest or query.get("id") or (body or {}).get("jobId")
    if not job_id:
        raise InvalidInputError("Job ID is required")
    return job_id


def get_info(engine: Engine, query: Dict) -> Response:
    return _json(200, {"success": True, "data": engine.info(query.get("url"))})


def post_convert(engine: Engine, body: Optional[Dict]) -> Response:
    if not isinstance(body, dict):
        raise InvalidInputError("JSON body is required")
    source = body.get("videoUrl") or body.get("sourceRef")
    job = engine.submit(source, body.get("quality"))
    return _json(202 if not job.terminal else 200, {
        "success": True,
        "jobId": job.id,
        "status": job.state,
    })


def get_status(engine: Engine, job_id: str) -> Response:
    return _json(200, {"success": True, "job": engine.status(job_id).to_dict()})


def get_download(engine: Engine, job_id: str) -> Response:
    job, fh = engine.download(job_id)
    return Response(200, fh, {
        **CORS_HEADERS,
        "Content-Type": "audio/mpeg",
        "Content-Disposition": f'attachment; filename="{job.source_ref}-{job.quality}.mp3"',
    })


def post_cancel(engine: Engine, job_id: str) -> Response:
    job = engine.cancel(job_id)
    return _json(200, {"success": True, "jobId": job.id, "status": job.state})


def handle_request(
    engine: Engine,
    method: str,
    path: str,
    query: Optional[Dict] = None,
    body: Optional[Dict] = None,
) -> Response:
    method = method.upper()
    query = query or {}
    if method == "OPTIONS":
        return Response(204, None, dict(CORS_HEADERS))

    try:
        if method == "GET" and path == "/api/info":
            return get_info(engine, query)
        if method == "POST" and path == "/api/convert":
            return post_convert(engine, body)
        if method == "GET" and _under(path, "/api/status"):
            return get_status(engine, _job_id(path, "/api/status", query, body))
        if method == "GET" and _under(path, "/api/download"):
            return get_download(engine, _job_id(path, "/api/download", query, body))
        if method == "POST" and _under(path, "/api/cancel"):
            return post_cancel(engine, _job_id(path, "/api/cancel", query, body))
        return Response(404, "Not Found", dict(CORS_HEADERS))
    except InvalidInputError as e:
        return _json(400, {"error": str(e)})
    except NotFound as e:
        return _json(404, {"error": str(e)})
    except NotReady as e:
        return _json(409, {"error": str(e), "status": e.state})
    except Exception as e:
        logger.exception(f"[api] {method} {path} failed")
        return _json(500, {"error": str(e)})
