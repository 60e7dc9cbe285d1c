"""
errors.py - the exception taxonomy shared by every layer.

Transport problems all derive from IOFailure so a caller can catch one class
and know the current request is lost. Protocol and configuration problems are
plain ValueErrors: they describe bad data, not a broken connection.
"""


# -----------------------------
# Transport errors
# -----------------------------

class IOFailure(Exception):
    """A read, write, open or flush failed on the underlying transport."""


class EndOfStream(IOFailure):
    """The source is exhausted. Expected at the natural end of a read loop."""

    def __init__(self, msg: str = "reached end of stream") -> None:
        super().__init__(msg)


class NoChannelsAvailable(IOFailure):
    """A channel source has nothing queued and no fallback to ask."""

    def __init__(self, msg: str = "no channels left") -> None:
        super().__init__(msg)


# -----------------------------
# Request / startup errors
# -----------------------------

class ProtocolViolation(ValueError):
    """
    The request is malformed: bad tag, missing line terminator, checksum
    mismatch and so on. The message text ends up verbatim in the request log
    as "Error : <message>", so keep it short.
    """


class ConfigurationFailure(ValueError):
    """Key material could not be parsed at startup. Fatal."""
