class ConvertQError(Exception):
    """Base class for all convertq errors."""


class InvalidInputError(ConvertQError, ValueError):
    """Unsupported or malformed source reference / quality. Never retried."""


class ConflictError(ConvertQError):
    """A state transition lost a compare-and-swap race."""

    def __init__(self, job_id: str, expected: str, actual: str):
        super().__init__(f"Job {job_id} is {actual}, expected {expected}")
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class InvalidTransition(ConvertQError):
    pass


class ConversionError(ConvertQError):
    """The conversion backend failed; subject to the retry policy."""


class ConversionTimeout(ConversionError):
    pass


class Cancelled(ConvertQError):
    pass


class NotReady(ConvertQError):
    """The job has not finished yet; ask again later."""

    def __init__(self, job_id: str, state: str):
        super().__init__(f"Job {job_id} is still {state}")
        self.job_id = job_id
        self.state = state


class NotFound(ConvertQError, LookupError):
    pass


class JobNotFound(NotFound):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class ArtifactNotFound(NotFound):
    pass
