"""
Event codec for shard files.

Shards are JSON Lines, one change event per line:

    {"commit_ts": 15, "type": "dml", "db": "shop", "table": "orders",
     "op": "insert", "values": [1, "book"]}
    {"commit_ts": 20, "type": "ddl", "db": "shop", "table": "orders",
     "query": "ALTER TABLE orders ADD COLUMN note TEXT"}

Blank lines are skipped. Anything else that does not decode raises
DecodeError with the file and line number.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from pitr.errors import DecodeError, PitrIOError

DML = "dml"
DDL = "ddl"
EVENT_KINDS = (DML, DDL)


@dataclass(frozen=True)
class Event:
    """
    One change event.

    Attributes:
        commit_ts: Commit TSO, the global ordering key
        kind: "dml" or "ddl"
        db: Database (schema) name
        table: Table name, empty for database-level DDL
        query: DDL statement text (ddl only)
        op: Row operation, e.g. insert/update/delete (dml only)
        values: Positional row image (dml only)
        extra: Unrecognized keys, carried through unchanged
    """
    commit_ts: int
    kind: str
    db: str = ""
    table: str = ""
    query: Optional[str] = None
    op: Optional[str] = None
    values: Optional[list] = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_ddl(self) -> bool:
        return self.kind == DDL

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "commit_ts": self.commit_ts,
            "type": self.kind,
            "db": self.db,
            "table": self.table,
        }
        if self.kind == DDL:
            result["query"] = self.query
        else:
            result["op"] = self.op
            result["values"] = self.values
        result.update(self.extra)
        return result


_KNOWN_KEYS = {"commit_ts", "type", "db", "table", "query", "op", "values"}


def decode_event(raw: dict[str, Any]) -> Event:
    """
    Build an Event from a decoded JSON object.

    Raises:
        DecodeError: If required fields are missing or have the wrong type
    """
    if not isinstance(raw, dict):
        raise DecodeError(f"event must be a JSON object, got {type(raw).__name__}")

    commit_ts = raw.get("commit_ts")
    # bool is an int subclass; reject it explicitly
    if not isinstance(commit_ts, int) or isinstance(commit_ts, bool):
        raise DecodeError(f"missing or non-integer commit_ts: {commit_ts!r}")

    kind = raw.get("type", DML)
    if kind not in EVENT_KINDS:
        raise DecodeError(f"unknown event type: {kind!r}")

    query = raw.get("query")
    if kind == DDL and not query:
        raise DecodeError("ddl event without query")

    values = raw.get("values")
    if values is not None and not isinstance(values, list):
        raise DecodeError(f"values must be a list, got {type(values).__name__}")

    return Event(
        commit_ts=commit_ts,
        kind=kind,
        db=raw.get("db") or "",
        table=raw.get("table") or "",
        query=query,
        op=raw.get("op"),
        values=values,
        extra={k: v for k, v in raw.items() if k not in _KNOWN_KEYS},
    )


def encode_event(event: Event) -> str:
    """Serialize an event to one JSON line (without the trailing newline)."""
    return json.dumps(event.to_dict(), separators=(",", ":"), default=str)


def decode_line(line: str, path: Optional[str] = None, lineno: Optional[int] = None) -> Event:
    try:
        raw = json.loads(line)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid JSON: {e.msg}", path=path, line=lineno) from e
    try:
        return decode_event(raw)
    except DecodeError as e:
        raise DecodeError(e.message, path=path, line=lineno) from e


def read_events(path: Path) -> Iterator[Event]:
    """
    Iterate the events of one shard file in file order.

    Raises:
        DecodeError: On the first malformed line
        PitrIOError: If the file cannot be read
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                yield decode_line(line, path=str(path), lineno=lineno)
    except UnicodeDecodeError as e:
        raise DecodeError(f"not UTF-8 text: {e.reason}", path=str(path)) from e
    except OSError as e:
        raise PitrIOError(f"read shard {path} failed: {e}") from e


def write_events(path: Path, events: Iterator[Event]) -> int:
    """Write events as JSON Lines. Returns the number of events written."""
    count = 0
    try:
        with open(path, "w", encoding="utf-8") as f:
            for event in events:
                f.write(encode_event(event))
                f.write("\n")
                count += 1
    except OSError as e:
        raise PitrIOError(f"write {path} failed: {e}") from e
    return count
