from typing import Any, Dict


class SandboxError(Exception):
    """Client-facing failure raised while validating or materializing a job."""

    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def payload(self) -> Dict[str, Any]:
        return {"status": "error", "error": self.message, **self.details}


class InvalidRequest(SandboxError):
    pass


class InvalidPath(SandboxError):
    pass


class TooManyResources(SandboxError):
    pass


class ResourceTooLarge(SandboxError):
    status_code = 413


class AggregateTooLarge(SandboxError):
    status_code = 413


class PayloadTooLarge(SandboxError):
    status_code = 413


class NotFound(SandboxError):
    status_code = 404


class UpstreamError(SandboxError):
    """A git invocation against the remote failed; the message is its redacted stderr."""


class RepositoryTooLarge(SandboxError):
    status_code = 413


class ServiceBusy(SandboxError):
    status_code = 503


class ShuttingDown(SandboxError):
    status_code = 503
