"""IMAP constants and configuration values."""


class IMAPResponse:
    """Standard IMAP response codes."""

    OK = "OK"
    NO = "NO"
    BAD = "BAD"


class FetchItems:
    """FETCH data items requested for each message.

    ``BODY.PEEK[]`` leaves the ``\\Seen`` flag untouched.
    """

    MESSAGE = "(UID INTERNALDATE BODY.PEEK[])"


# Greeting wait and TLS handshake share the connect budget; this only bounds
# individual aioimaplib commands that are not wrapped by a caller timeout.
COMMAND_TIMEOUT = 60.0
