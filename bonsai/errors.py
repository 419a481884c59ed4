"""
Error taxonomy for the widget runtime.

Services raise these; the application factory turns them into
JSON responses of the form {"error": "..."} with the matching status code.
"""


class WidgetError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {'error': self.message}


class ValidationError(WidgetError):
    """Missing or malformed request fields. Never retried."""

    status_code = 400


class AuthorizationError(WidgetError):
    """Widget key mismatch, disallowed origin or inactive organization."""

    status_code = 403


class NotFoundError(WidgetError):
    """Unknown project, session, slot or rule."""

    status_code = 404


class StoreError(WidgetError):
    """Downstream datastore or storage failure."""

    status_code = 500
