class ChatError(Exception):
    """Base class for errors raised by the messaging core"""


class InvalidArgument(ChatError):
    """Missing or malformed request field. Client error, never retried."""


class NotFound(ChatError):
    """Unknown counterpart or record."""


class PersistenceFailure(ChatError):
    """The message log could not be reached. Fatal to the calling request."""


class AdvisoryStoreFailure(ChatError):
    """Presence, cache or counter store unavailable. Logged and absorbed in cache.py."""


class AuthenticationFailure(ChatError):
    """Gateway handshake carried no valid credential."""
