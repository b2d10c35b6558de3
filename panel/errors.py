"""
Error taxonomy for the panel core.

Every error carries the HTTP status the API layer answers with; the service
renders them as {"error": message}.
"""


class PanelError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationMissing(PanelError):
    """No live backend configured. A valid mode, reported as a skip."""
    status_code = 400


class LiveBackendUnreachable(PanelError):
    """Timeout or network failure talking to the live backend."""
    status_code = 502


class Unauthorized(PanelError):
    status_code = 401


class ValidationFailure(PanelError):
    """Unknown action/table or malformed payload, rejected before any effect."""
    status_code = 400


class StoreFailure(PanelError):
    """System-of-record query or write failed. Always propagated."""
    status_code = 500


class UpdateNotFound(PanelError):
    status_code = 404
