class ChatError(Exception):
    """Base class for errors that end as a notice to the sending session."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """Bad room id or malformed payload. Nothing was changed."""


class PermissionDenied(ChatError):
    """Moderation attempted by a session without privilege."""


class NotFoundError(ChatError):
    """Moderation target is not connected."""


class BackendUnavailable(ChatError):
    """Durable message backend is unreachable or erroring. Never shown to users."""
