import json
import logging
import shutil

import click

from .backends import CommandConversionBackend, DEFAULT_COMMAND, NoembedMetadataLookup
from .cache import FileArtifactStore
from .config import ARTIFACT_DIR, DB_FILE, DEFAULT_QUALITY, SUPPORTED_QUALITIES
from .engine import Engine
from .errors import ConvertQError
from .jobstore import get_config, set_config
from .models import STATES
from .utils import parse_delay_to_seconds


def _engine(ctx, command: str = DEFAULT_COMMAND) -> Engine:
    opts = ctx.obj
    return Engine(
        db_path=opts["db"],
        store=FileArtifactStore(opts["artifacts"]),
        backend=CommandConversionBackend(command),
        metadata=NoembedMetadataLookup(),
    )


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


@click.group(help="convertq — video-to-audio conversion job queue")
@click.option("--db", envvar="CONVERTQ_DB", default=DB_FILE, show_default=True, help="SQLite database path")
@click.option("--artifacts", envvar="CONVERTQ_ARTIFACTS", default=ARTIFACT_DIR, show_default=True,
              help="Directory for converted files")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db, artifacts, verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"db": db, "artifacts": artifacts}


# ---------- Submit / inspect ----------
@cli.command("submit", help="Request conversion of a video URL or id")
@click.argument("source")
@click.option("--quality", default=DEFAULT_QUALITY, show_default=True,
              help=f"Audio bitrate in kbps, one of {', '.join(SUPPORTED_QUALITIES)} (a k suffix is accepted)")
@click.pass_context
def submit_cmd(ctx, source, quality):
    try:
        job = _engine(ctx).submit(source, quality)
    except ConvertQError as e:
        _fail(e)
    click.secho(f"{job.id} {job.state}", fg="green")


@cli.command("status", help="Show a job")
@click.argument("job_id")
@click.pass_context
def status_cmd(ctx, job_id):
    try:
        job = _engine(ctx).status(job_id)
    except ConvertQError as e:
        _fail(e)
    click.echo(json.dumps(job.to_dict(), indent=2))


@cli.command("download", help="Write the converted file of a finished job")
@click.argument("job_id")
@click.option("-o", "--output", default=None, help="Output path (default: <video>-<quality>.mp3)")
@click.pass_context
def download_cmd(ctx, job_id, output):
    try:
        job, fh = _engine(ctx).download(job_id)
    except ConvertQError as e:
        _fail(e)
    path = output or f"{job.source_ref}-{job.quality}.mp3"
    with fh, open(path, "wb") as out:
        shutil.copyfileobj(fh, out)
    click.secho(f"Saved {path}", fg="green")


@cli.command("cancel", help="Cancel a pending or running job")
@click.argument("job_id")
@click.pass_context
def cancel_cmd(ctx, job_id):
    try:
        job = _engine(ctx).cancel(job_id)
    except ConvertQError as e:
        _fail(e)
    click.secho(f"{job.id} {job.state}" + (" (cancel requested)" if job.cancel_requested else ""), fg="yellow")


@cli.command("info", help="Look up title/author of a video")
@click.argument("source")
@click.pass_context
def info_cmd(ctx, source):
    try:
        data = _engine(ctx).info(source)
    except ConvertQError as e:
        _fail(e)
    click.echo(json.dumps(data, indent=2))


@cli.command("list")
@click.option("--state", type=click.Choice(STATES), default=None)
@click.option("--limit", type=int, default=None)
@click.pass_context
def list_cmd(ctx, state, limit):
    rows = _engine(ctx).list_jobs(state=state, limit=limit)
    if not rows:
        click.echo("No jobs.")
        return

    for r in rows:
        click.echo(
            f"{r.id:>32} | {r.state:<9} | attempts={r.attempts}/{r.max_attempts} "
            f"| {r.source_ref}@{r.quality} | next={r.next_run_at} | error={r.error}"
        )


@cli.command("stats", help="Job counts by state and cache usage")
@click.pass_context
def stats_cmd(ctx):
    click.echo(json.dumps(_engine(ctx).stats(), indent=2))


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--command", default=DEFAULT_COMMAND, show_default=True,
              help="Converter command template ({url} {source} {quality} {output})")
@click.pass_context
def worker_start(ctx, count, command):
    engine = _engine(ctx, command)
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    engine.pool.run_forever(count)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Maintenance ----------
@cli.group("cache", help="Result cache")
def cache_group():
    pass


@cache_group.command("evict")
@click.option("--max-bytes", type=int, default=None, help="Override cache_max_bytes")
@click.pass_context
def cache_evict(ctx, max_bytes):
    evicted = _engine(ctx).evict(max_bytes)
    click.echo(f"Evicted {len(evicted)} entr{'y' if len(evicted) == 1 else 'ies'}.")


@cli.command("gc", help="Delete finished jobs older than the retention window")
@click.option("--older-than", "older_than", default=None,
              help="e.g. 12h, 7d (default: job_retention_seconds)")
@click.pass_context
def gc_cmd(ctx, older_than):
    try:
        seconds = parse_delay_to_seconds(older_than) if older_than else None
    except ValueError as e:
        _fail(e)
    removed = _engine(ctx).gc(seconds)
    click.echo(f"Removed {removed} job(s).")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    engine = _engine(ctx)
    with engine.connection() as conn:
        click.echo(json.dumps(get_config(conn), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    engine = _engine(ctx)
    try:
        with engine.connection() as conn:
            set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        _fail(e)


def main():
    cli()
