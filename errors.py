"""
Exception types raised by the crash resolution pipeline.
"""
from typing import Optional


class CrashLinkError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(CrashLinkError):
    """Configuration file could not be read or parsed."""


class SourceHostError(CrashLinkError):
    """The source host answered with something other than content or a 404."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class GenerativeModelError(CrashLinkError):
    """The generative host failed or replied with something we could not parse."""


class StateConflictError(CrashLinkError):
    """A component aggregate kept changing underneath us."""


class CrashNotFoundError(CrashLinkError):
    def __init__(self, crash_id: str):
        super().__init__(f"Crash {crash_id} not found")
        self.crash_id = crash_id
