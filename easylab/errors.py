"""
Error classes for easylab job orchestration.

These error types classify failures at the job boundary:
- JobNotFoundError: unknown job id on any registry operation
- InvalidStateError: operation not permitted in the job's current status
- PreparationError: working directory, source generation or dependency
  resolution failed before the engine was invoked
- EngineError: a Pulumi operation itself failed
- ConfigurationMissingError: required provider credentials are absent

The driver catches PreparationError, EngineError and
ConfigurationMissingError at the job boundary and records them on the job
(status=failed plus a transcript line). JobNotFoundError and
InvalidStateError propagate to the caller.
"""


class EasylabError(Exception):
    """Base exception for easylab."""
    pass


class JobNotFoundError(EasylabError):
    """Raised when a job id is not present in the registry."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"job {job_id} not found")


class InvalidStateError(EasylabError):
    """
    Operation requested against a job whose status does not permit it.

    Examples:
    - retry on a job that is not failed
    - launch on a job that is not dry-run-completed
    - appending output to a job that already reached a terminal status
    """
    pass


class PreparationError(EasylabError):
    """
    Preparation failed before the engine was ever invoked.

    Always fatal for the current attempt.
    """
    pass


class EngineError(EasylabError):
    """
    The infrastructure engine returned an error.

    Apply failures attempt best-effort output salvage before this is
    recorded; destroy failures are never downgraded to success.
    """
    pass


class StackMissingError(EngineError):
    """The engine reported that the requested stack does not exist."""
    pass


class ConfigurationMissingError(EasylabError):
    """Required provider credentials are not configured."""
    pass


class CredentialValidationError(EasylabError, ValueError):
    """Provider credentials were rejected by validation."""
    pass


class ConfigError(EasylabError):
    """Configuration validation error."""
    pass
