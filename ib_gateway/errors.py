"""
Error variants raised by the gateway core.

Every failure the core can report is one of the classes below. The boundary
layer (HTTP routes, MCP middleware) maps each variant onto a protocol
response using `status_code` and, for authentication failures, the
`www_authenticate` challenge.

A lookup miss on an expired or deleted upload is not an error: UploadStore.get
returns None for it.
"""


class GatewayError(Exception):
    """
    Base class for all gateway failures.

    Attributes:
        message: Human-readable error description
        status_code: HTTP status code the boundary should respond with
    """

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class AuthenticationRequired(GatewayError):
    """No bearer token, unknown token, or the matching session has expired."""

    status_code = 401

    def __init__(self, message: str, www_authenticate: str):
        self.www_authenticate = www_authenticate
        super().__init__(message)


class InvalidURI(GatewayError):
    """A resource URI does not match ib://{clientId}/resource/{resourceId}."""

    status_code = 400


class NotFound(GatewayError):
    """The resource is absent from the scanned upstream window."""

    status_code = 404


class UpstreamFailure(GatewayError):
    """
    The IntelligenceBank API answered with a non-success status, could not be
    reached, or returned a payload that failed validation.

    Attributes:
        upstream_status: HTTP status from the upstream API (None if no
                         response was received)
    """

    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None):
        self.upstream_status = upstream_status
        super().__init__(message)


class UploadRejected(GatewayError):
    """The upload is too large, empty, or of a disallowed MIME type."""

    status_code = 400
