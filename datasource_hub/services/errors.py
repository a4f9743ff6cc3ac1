from __future__ import annotations


class DatasourceHubError(RuntimeError):
    """Base error rendered as a JSON ``{status, message}`` body."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(DatasourceHubError, LookupError):
    status_code = 404


class PermissionDenied(DatasourceHubError):
    status_code = 403

    def __init__(self, message: str = "You do not have access to perform this action") -> None:
        super().__init__(message)


class DataSourceValidationError(DatasourceHubError):
    """Raised when a data-source request is well-formed but cannot be applied."""


class DataSourceInUseError(DatasourceHubError):
    """Raised when a data source cannot be deleted because something still depends on it."""


class AuthenticationError(DatasourceHubError):
    status_code = 401
