class ChatError(Exception):
    """Base class for errors surfaced to chat clients.

    ``message`` is the user-facing text placed in ``{"success": false, "error": ...}``
    results; ``code`` is a stable identifier clients can branch on.
    """

    code = "chat_error"
    default_message = "Something went wrong"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AlreadyJoining(ChatError):
    code = "already_joining"
    default_message = "A join for this user is already in progress"


class InvalidPassword(ChatError):
    code = "invalid_password"
    default_message = "Incorrect password"


class InvalidUsername(ChatError):
    code = "invalid_username"
    default_message = "Username is required"


class StoreUnavailable(ChatError):
    code = "store_unavailable"
    default_message = "The chat store is unavailable"
