"""
Exception taxonomy for perfstream.
Failures that prevent a session from being established raise; failures
inside an active stream are reported as StreamError events instead.
"""

from typing import Optional


class PerfStreamError(Exception):
    """Base class for all perfstream errors."""


class CommandFailed(PerfStreamError):
    """A one-shot device command exited non-zero or could not be run."""

    def __init__(self, result):
        self.result = result
        detail = (result.stderr or result.stdout or '').strip()
        super().__init__(
            f"Command failed with exit code {result.exit_code}: {result.command}"
            + (f"\n{detail}" if detail else "")
        )


class UnsupportedPlatform(PerfStreamError):
    """The device API level is below the minimum the agent supports."""

    def __init__(self, api_level: int, min_api_level: int):
        self.api_level = api_level
        self.min_api_level = min_api_level
        super().__init__(
            f"Your Android version (sdk API level {api_level}) is not supported. "
            f"Supported versions > {min_api_level - 1}."
        )


class InstallationFailed(PerfStreamError):
    """The agent could not be pushed or calibrated."""


class MalformedFrame(PerfStreamError):
    """An agent output frame is missing its expected delimiters."""

    def __init__(self, message: str, frame: Optional[str] = None):
        self.frame = frame
        super().__init__(message)


class PollingAlreadyActive(PerfStreamError):
    """A polling session is already running against this device."""
