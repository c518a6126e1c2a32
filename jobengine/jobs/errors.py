"""Exception taxonomy for the job engine.

Service errors come from the external AI/network collaborators and are split
into transient (worth retrying) and fatal (retrying cannot help). The other
families are raised by the engine itself and mapped onto HTTP status codes
by the API layer.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# External service failures
# ---------------------------------------------------------------------------

class ServiceError(EngineError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """Rate limit, 5xx, timeout or dropped connection."""


class RateLimited(TransientServiceError):
    pass


class ServerError(TransientServiceError):
    pass


class ServiceTimeout(TransientServiceError):
    pass


class FatalServiceError(ServiceError):
    """Malformed request, payment or auth problem, or an unrecognised failure."""


class PaymentRequired(FatalServiceError):
    pass


class MalformedRequest(FatalServiceError):
    pass


class UnknownServiceError(FatalServiceError):
    pass


# ---------------------------------------------------------------------------
# Engine / state errors
# ---------------------------------------------------------------------------

class ResumeTargetMissing(EngineError):
    """The job or its handler cannot be found."""


class JobNotFound(ResumeTargetMissing):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class UnsupportedJobType(ResumeTargetMissing):
    def __init__(self, job_type: str, supported=()):
        super().__init__(f"No resume handler for job type: {job_type}")
        self.job_type = job_type
        self.supported = list(supported)


class InvalidTransition(EngineError):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class InvalidCheckpoint(EngineError):
    """A checkpoint tried to move a progress counter backwards."""


class StoreUnavailable(EngineError):
    """The durable store could not be read or written."""


class CheckpointError(StoreUnavailable):
    """A checkpoint write failed; the invocation must stop without marking FAILED."""
