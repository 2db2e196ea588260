"""Errors raised while serving a request, each mapped to an HTTP status."""


class BridgeError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


# --- Client errors: reported before any backend call ---
class MethodNotAllowed(BridgeError):
    status_code = 405
    message = "Method not allowed"


class MissingAuthorization(BridgeError):
    status_code = 401
    message = "Unauthorized: Missing Authorization header"


class BadRequestBody(BridgeError):
    status_code = 400
    message = "Bad request: Could not decode JSON"


# --- Upstream errors ---
class UpstreamUnreachable(BridgeError):
    message = "Failed to communicate with OpenAI API"


class UpstreamTimeout(BridgeError):
    status_code = 504
    message = "Timed out waiting for OpenAI API"


class UpstreamDecodeError(BridgeError):
    message = "Failed to decode OpenAI response"


class EmptyUpstreamChoices(BridgeError):
    message = "No content choices from OpenAI"


class UpstreamProtocolError(BridgeError):
    """Backend answered with a non-success status.

    ``body`` holds the backend's JSON error document when it sent one,
    in which case it is relayed as-is.
    """

    def __init__(self, status_code: int, message: str, body: bytes | None = None):
        super().__init__(message, status_code)
        self.body = body
