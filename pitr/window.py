"""
Window - the [start_tso, stop_tso] commit-timestamp range of a run.

A stop of 0 leaves the upper end unbounded.
"""

from dataclasses import dataclass

from pitr.errors import ConfigError


def is_acceptable(commit_ts: int, start_tso: int, stop_tso: int) -> bool:
    """Return True if commit_ts falls inside [start_tso, stop_tso] (both inclusive)."""
    return commit_ts >= start_tso and (stop_tso == 0 or commit_ts <= stop_tso)


@dataclass(frozen=True)
class Window:
    """
    Resolved TSO window.

    Attributes:
        start_tso: Inclusive lower bound
        stop_tso: Inclusive upper bound, 0 for unbounded
    """
    start_tso: int
    stop_tso: int = 0

    def __post_init__(self):
        if self.start_tso < 0 or self.stop_tso < 0:
            raise ConfigError(
                f"TSO bounds must not be negative: [{self.start_tso}, {self.stop_tso}]"
            )
        if self.start_tso and self.stop_tso and self.start_tso > self.stop_tso:
            raise ConfigError(
                f"start TSO {self.start_tso} is greater than stop TSO {self.stop_tso}"
            )

    @property
    def unbounded(self) -> bool:
        return self.stop_tso == 0

    def contains(self, commit_ts: int) -> bool:
        return is_acceptable(commit_ts, self.start_tso, self.stop_tso)

    def __str__(self) -> str:
        return f"[{self.start_tso}, {self.stop_tso}]"
