"""
Error classes for pitr runs.

Every failure the pipeline can surface is a PitrError subclass:
- DiscoveryError: no shard files, or none left inside the TSO window
- ConfigError: conflicting or unusable configuration
- SnapshotError: reading schema history from the store failed
- ExecutionError: applying a schema change to the catalog failed
- DecodeError: malformed shard content
- PitrIOError: filesystem failures

Nothing in the pipeline retries. The orchestrator annotates an error with
the phase it happened in and re-raises it with its original type.
"""

from typing import Optional


class PitrError(Exception):
    """Base exception for pitr."""

    def __init__(self, message: str, phase: Optional[str] = None):
        self.message = message
        self.phase = phase
        super().__init__(message)

    def annotate(self, phase: str) -> "PitrError":
        """Record the phase the error surfaced in (first annotation wins)."""
        if self.phase is None:
            self.phase = phase
        return self

    def __str__(self) -> str:
        if self.phase:
            return f"{self.phase}: {self.message}"
        return self.message


class DiscoveryError(PitrError):
    """No usable shard files were found."""
    pass


class NoFilesFound(DiscoveryError):
    """The data directory holds no shard files."""

    def __init__(self, directory: str):
        self.directory = directory
        super().__init__(f"no binlog file found in directory {directory}")


class NoFilesInWindow(DiscoveryError):
    """Shard files exist but none can hold events inside the window."""

    def __init__(self, directory: str, start_tso: int, stop_tso: int):
        self.directory = directory
        self.start_tso = start_tso
        self.stop_tso = stop_tso
        super().__init__(
            f"no binlog file in directory {directory} remained between "
            f"the time interval [{start_tso}, {stop_tso}]"
        )


class ConfigError(PitrError):
    """Configuration validation error."""
    pass


class SnapshotError(PitrError):
    """Acquiring or reading the store metadata snapshot failed."""
    pass


class ExecutionError(PitrError):
    """
    A schema change could not be applied to the catalog.

    Fatal for the run: the catalog would no longer match the data.
    """
    pass


class DecodeError(PitrError):
    """Malformed shard content."""

    def __init__(self, message: str, path: Optional[str] = None, line: Optional[int] = None):
        self.path = path
        self.line = line
        if path is not None:
            location = f"{path}:{line}" if line is not None else path
            message = f"{location}: {message}"
        super().__init__(message)


class PitrIOError(PitrError):
    """Filesystem failure while reading shards or writing output."""
    pass
