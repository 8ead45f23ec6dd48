from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base error for every failure a request can surface to the client."""

    status_code = 500

    def __init__(self, error: str, details: Optional[str] = None, suggestion: Optional[str] = None):
        super().__init__(error)
        self.error = error
        self.details = details
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.details is not None:
            body["details"] = self.details
        if self.suggestion is not None:
            body["suggestion"] = self.suggestion
        return body


class ValidationError(ServiceError):
    """Missing, insufficient or wrong-type input. Nothing was processed."""

    status_code = 400


class UploadTooLarge(ValidationError):
    status_code = 413


class ArtifactNotFound(ServiceError):
    status_code = 404


class ProcessingError(ServiceError):
    """A collaborator failed and the operation could not produce a result."""


class StorageError(ServiceError):
    """The upload directory could not be created, read or written."""


class ToolInvocationError(ServiceError):
    """An external executable exited with an error."""

    def __init__(self, error: str, result=None, details: Optional[str] = None):
        if details is None and result is not None:
            details = result.stderr or result.stdout or None
        super().__init__(error, details=details)
        self.result = result


class PasswordError(ToolInvocationError):
    status_code = 401
