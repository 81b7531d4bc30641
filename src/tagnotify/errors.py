"""
Exceptions raised by tagnotify.

Only ``InvalidRule`` and its siblings reach the person editing rules; the
others are recoverable conditions that the generator, dispatcher and
controller log and step over.
"""


class TagnotifyError(Exception):
    """Base class for all tagnotify errors."""


class InvalidDurationFormat(TagnotifyError, ValueError):
    """An offset string is not a signed calendar duration such as '-P1DT2H'."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid ISO 8601 duration: {value!r}")


class InvalidRuleField(TagnotifyError, ValueError):
    """A rule field name is empty or contains characters outside [A-Za-z0-9_-]."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(
            f"Invalid field name: {value!r} (use letters, digits, '-' or '_')"
        )


class InvalidTimeFormat(TagnotifyError, ValueError):
    """A time of day is not a 24 hour HH:MM string."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid default time format: {value!r} (use HH:MM)")


class InvalidRule(TagnotifyError, ValueError):
    """A rule failed validation; ``errors`` lists every problem found."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class IndexUnavailable(TagnotifyError):
    """The document index cannot be built or read right now."""


class DeliveryUnsupported(TagnotifyError):
    """A delivery channel is not available on this machine."""

    def __init__(self, channel: str, reason: str = ""):
        self.channel = channel
        self.reason = reason
        msg = f"Channel {channel!r} is unavailable"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class PersistenceFailure(TagnotifyError):
    """The schedule file could not be read or written."""
