class ChatError(Exception):
    """Base class for chat relay errors."""


class AuthenticationFailure(ChatError):
    """Credential missing, invalid, expired, or the identity is unknown.

    The connection is never admitted.
    """


class MalformedEvent(ChatError):
    """An inbound frame failed validation. The event is ignored and the connection stays open."""

    def __init__(self, message: str, event: str = None):
        super().__init__(message)
        self.event = event
