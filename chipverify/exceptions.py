"""Exception hierarchy for the chip verification service."""


class ChipVerifyError(Exception):
    """Base class for infrastructure failures that must surface as server errors."""


class ConfigurationError(ChipVerifyError):
    """Raised at startup when settings are malformed or unsafe."""


class RegistryError(ChipVerifyError):
    """The chip store could not be reached or answered unexpectedly."""


class ExportUnsupported(ChipVerifyError):
    """The registry backend has no scan event export."""


class AuditWriteError(ChipVerifyError):
    """A scan event could not be appended to the audit trail."""

    def __init__(self, message: str, state: str = None):
        self.state = state
        super().__init__(message)


class CounterParseError(ValueError):
    """The presented counter is not a non-negative integer."""

    def __init__(self, raw):
        self.raw = raw
        super().__init__(f"counter is not a non-negative integer: {raw!r}")
