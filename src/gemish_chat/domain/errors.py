"""Error taxonomy for the chat relay."""


class ChatError(Exception):
    """Base class for errors with a client-facing representation."""

    http_status = 500
    public_message = "An error occurred processing your request"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message


class InvalidRequest(ChatError):
    """Missing or malformed input."""

    http_status = 400
    public_message = "Message and chat ID are required"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        # Validation details are safe to return to the caller
        if detail:
            self.public_message = detail


class Unauthenticated(ChatError):
    http_status = 401
    public_message = "Unauthorized"


class NotFound(ChatError):
    """Chat is missing or owned by someone else; both look the same to callers."""

    http_status = 404
    public_message = "Chat not found"


class UnsupportedModel(ChatError):
    http_status = 400
    public_message = "Unsupported model"


class UpstreamFailure(ChatError):
    """Provider error, timeout or malformed stream."""


class PersistenceFailure(ChatError):
    """Message store unreachable during load or save."""
