"""
Error taxonomy of the chat engine.

Every error carries a short ``title`` and a human readable ``message``. Only
those two strings are ever shown to a user; store and transport details stay
in the logs.
"""


class ChatEngineError(Exception):
    title = "Error"
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(ChatEngineError):
    title = "Not signed in"
    default_message = "Not authenticated"


class SessionFailure(ChatEngineError):
    default_message = "Failed to initialize chat session"


class PersistenceFailure(ChatEngineError):
    default_message = "Failed to save message"


class StreamFailure(ChatEngineError):
    default_message = "Failed to send message"


class SendInProgress(ChatEngineError):
    title = "Please wait"
    default_message = "A reply is still streaming for this conversation"


class FrameParseFailure(ChatEngineError):
    """
    A single malformed stream frame. The decoder logs it as a warning and
    skips the frame; it is never raised.
    """
    default_message = "Malformed stream frame"
