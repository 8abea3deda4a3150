from typing import Any, Optional


class LifeMasterError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class InputValidationError(LifeMasterError):
    status_code = 400


class NotAuthenticated(LifeMasterError):
    status_code = 401


class RefreshFailed(LifeMasterError):
    status_code = 401


class UpstreamProviderError(LifeMasterError):
    status_code = 502


class ConsentDenied(LifeMasterError):
    status_code = 403


class PersistenceError(LifeMasterError):
    status_code = 500


class AnalysisError(LifeMasterError):
    status_code = 500


class EngineNotConfigured(AnalysisError):
    pass
