"""
Database/table allow and deny lists applied to events during map.

Names are matched case-insensitively. A name starting with "~" is a
regular expression, e.g. "~^shop_\\d+$".
"""

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

SYSTEM_SCHEMAS = ("information_schema", "performance_schema", "mysql", "metrics_schema")


@dataclass(frozen=True)
class TableName:
    db_name: str
    tbl_name: str

    @classmethod
    def parse(cls, value: Any) -> "TableName":
        """
        Accept {"db_name": ..., "tbl_name": ...}, a (db, table) pair, or "db.table".

        Raises:
            ValueError: If the value has none of these shapes
        """
        if isinstance(value, TableName):
            return value
        if isinstance(value, dict):
            if "db_name" not in value or "tbl_name" not in value:
                raise ValueError(f"table rule needs db_name and tbl_name: {value}")
            return cls(str(value["db_name"]), str(value["tbl_name"]))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(str(value[0]), str(value[1]))
        if isinstance(value, str) and "." in value:
            db, _, tbl = value.partition(".")
            return cls(db, tbl)
        raise ValueError(f"invalid table rule: {value!r}")


def _compile(name: str):
    name = name.lower()
    if name.startswith("~"):
        pattern = re.compile(name[1:])
        return lambda value: pattern.search(value) is not None
    return lambda value: value == name


class EventFilter:
    """
    Decide whether an event's database/table should be skipped.

    With any do_* list set, only the listed databases or tables pass.
    ignore_* lists are applied after that. System schemas never pass.
    """

    def __init__(
        self,
        ignore_dbs: Optional[Iterable[str]] = None,
        ignore_tables: Optional[Iterable[Any]] = None,
        do_dbs: Optional[Iterable[str]] = None,
        do_tables: Optional[Iterable[Any]] = None,
    ):
        ignore_dbs = list(ignore_dbs or []) + list(SYSTEM_SCHEMAS)
        self._ignore_dbs = [_compile(d) for d in ignore_dbs]
        self._do_dbs = [_compile(d) for d in (do_dbs or [])]
        self._ignore_tables = [self._compile_table(t) for t in (ignore_tables or [])]
        self._do_tables = [self._compile_table(t) for t in (do_tables or [])]

    @staticmethod
    def _compile_table(rule: Any):
        table = TableName.parse(rule)
        return _compile(table.db_name), _compile(table.tbl_name)

    @staticmethod
    def _match_db(rules, db: str) -> bool:
        return any(match(db) for match in rules)

    @staticmethod
    def _match_table(rules, db: str, table: str) -> bool:
        return any(match_db(db) and match_tbl(table) for match_db, match_tbl in rules)

    def skip(self, db: str, table: str = "") -> bool:
        """Return True if events on db.table should be dropped."""
        db = (db or "").lower()
        table = (table or "").lower()

        if self._do_tables or self._do_dbs:
            if not self._match_table(self._do_tables, db, table) and not self._match_db(self._do_dbs, db):
                return True

        if self._match_table(self._ignore_tables, db, table):
            return True
        return self._match_db(self._ignore_dbs, db)

    def skip_event(self, event) -> bool:
        return self.skip(event.db, event.table)
