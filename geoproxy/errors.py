"""Proxy error hierarchy.

Each error carries the status code, a stable caller-facing message and a
machine-readable reason code. Nothing else from the failure reaches the
caller.
"""


class ProxyError(Exception):
    """Base error."""

    status_code = 500
    reason = "internal_error"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason


class ValidationError(ProxyError):
    """Missing or malformed request input."""

    status_code = 400
    reason = "invalid_request"


class PolicyDenied(ProxyError):
    """Geofence or domain allowlist rejected the request."""

    status_code = 403
    reason = "policy_denied"


class UpstreamError(ProxyError):
    """The origin could not be reached or answered with an error."""

    status_code = 502
    reason = "upstream_error"
