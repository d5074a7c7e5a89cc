class CaplogError(Exception):
    """Base capability-log exception."""


class StoreUnavailable(CaplogError):
    """Raised when the record directory cannot be created or written."""


class NotFound(CaplogError):
    """Raised when a record file does not exist (or vanished)."""


class MalformedRecord(CaplogError):
    """Raised for record names or bodies that do not follow the record layout."""


class EncodingError(CaplogError):
    """Raised when record metadata cannot be serialized."""
