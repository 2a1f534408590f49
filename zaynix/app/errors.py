"""Gateway error taxonomy.

Every error a handler raises maps to one HTTP status. The exception handlers
in ``zaynix.main`` render them as JSON for API routes and as plain text for
the proxy and listing routes.
"""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, error: Optional[str] = None, detail: Optional[str] = None):
        self.error = error or self.default_message
        self.detail = detail
        super().__init__(self.error)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.detail:
            body["detail"] = self.detail
        return body


class BadRequest(GatewayError):
    status_code = 400
    default_message = "Bad request"


class Forbidden(GatewayError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(GatewayError):
    status_code = 404
    default_message = "Not found"


class PayloadTooLarge(GatewayError):
    status_code = 413
    default_message = "File too large"


class UpstreamFailure(GatewayError):
    status_code = 500
    default_message = "Upstream storage error"


class InternalError(GatewayError):
    status_code = 500
    default_message = "Internal server error"


class ConfigurationError(Exception):
    """Invalid process configuration, raised at startup."""
