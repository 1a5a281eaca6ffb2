"""
Schema-history types.

A run's schema history comes from exactly one source, so it is modelled as
a two-variant union:
- FileDDL: statements read verbatim from a base-schema export
- JobDDL: structured history jobs read from the store's metadata

Consumers dispatch on the variant type; there is no "both set" state.
"""

from dataclasses import dataclass, field
from typing import Any, Union

# Numeric job states as reported by the store, mapped to their names
JOB_STATE_NAMES = {
    0: "none",
    1: "running",
    2: "rollingback",
    3: "rollback done",
    4: "done",
    5: "cancelled",
    6: "synced",
    7: "cancelling",
    8: "queueing",
}


def _state_name(value: Any) -> str:
    if isinstance(value, int):
        return JOB_STATE_NAMES.get(value, str(value))
    return str(value or "synced").strip().lower()


@dataclass(frozen=True)
class SchemaJob:
    """
    One historical schema-change job.

    Attributes:
        job_id: Store-assigned id, allocated when the change was proposed
        schema_version: Schema version the change committed at (replay order)
        finished_ts: Commit TSO at which the change became visible
        schema_name: Database the job ran in
        table_name: Table the job touched, if any
        job_type: Store-specific job type
        state: Job state name, e.g. "synced" or "cancelled"
        query: DDL text of the change
        payload: The raw job document
    """
    job_id: int
    schema_version: int
    finished_ts: int
    schema_name: str = ""
    table_name: str = ""
    job_type: Any = None
    state: str = "synced"
    query: str = ""
    payload: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SchemaJob":
        """
        Build a job from the store's JSON document.

        Schema version and finished TSO are read from the nested "binlog"
        object when present, else from top-level keys.

        Raises:
            KeyError: If id or schema version is missing
            TypeError/ValueError: If a numeric field is not numeric
        """
        binlog = raw.get("binlog") or {}
        schema_version = binlog.get("SchemaVersion", raw.get("schema_version"))
        finished_ts = binlog.get("FinishedTS", raw.get("finished_ts", 0))
        if schema_version is None:
            raise KeyError("schema_version")
        job_id = raw["id"] if "id" in raw else raw["job_id"]
        return cls(
            job_id=int(job_id),
            schema_version=int(schema_version),
            finished_ts=int(finished_ts or 0),
            schema_name=raw.get("schema_name") or "",
            table_name=raw.get("table_name") or "",
            job_type=raw.get("type"),
            state=_state_name(raw.get("state")),
            query=raw.get("query") or "",
            payload=dict(raw),
        )


@dataclass(frozen=True)
class FileDDL:
    """Schema history as ordered DDL statements from a schema file."""
    statements: tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.statements)


@dataclass(frozen=True)
class JobDDL:
    """Schema history as history jobs ordered by schema version."""
    jobs: tuple[SchemaJob, ...] = ()

    def __len__(self) -> int:
        return len(self.jobs)


SchemaChangeSource = Union[FileDDL, JobDDL]
