"""
SchemaCatalog - in-memory database/table/column catalog.

The catalog is the working schema state of a run. Schema history is
replayed into it before merging, and DDL events met while reducing are
applied to it in commit order, so DML row images can be bound to the
column names that were current when the row was written.

Supported DDL (MySQL dialect subset):
- CREATE/DROP DATABASE|SCHEMA, USE
- CREATE TABLE [IF NOT EXISTS] ... (column list) | LIKE other
- DROP TABLE [IF EXISTS], TRUNCATE TABLE, RENAME TABLE
- ALTER TABLE: ADD/DROP/CHANGE/MODIFY/RENAME COLUMN, RENAME TO

Session statements (SET, LOCK/UNLOCK, versioned comments), index and
view statements change nothing tracked here and are accepted as no-ops.
Anything else raises ExecutionError.
"""

import copy
import logging
import re
from typing import Iterable, Optional

from pitr.errors import ExecutionError

logger = logging.getLogger(__name__)

IDENT = r'(?:`(?:[^`]|``)+`|"[^"]+"|[\w$]+)'
QNAME = rf"(?:{IDENT}\s*\.\s*)?{IDENT}"

KEY_CLAUSES = {"PRIMARY", "KEY", "INDEX", "UNIQUE", "CONSTRAINT", "FOREIGN", "FULLTEXT", "SPATIAL", "CHECK"}

NOOP_PREFIXES = re.compile(
    r"^(?:SET|LOCK|UNLOCK|START\s+TRANSACTION|BEGIN|COMMIT|ROLLBACK|FLUSH|ANALYZE|OPTIMIZE|GRANT|REVOKE)\b"
    r"|^(?:ALTER)\s+(?:DATABASE|SCHEMA)\b"
    r"|^(?:CREATE|DROP)\s+(?:(?:UNIQUE|FULLTEXT|SPATIAL)\s+)?INDEX\b"
    r"|^(?:CREATE|ALTER|DROP)\s+(?:OR\s+REPLACE\s+)?"
    r"(?:ALGORITHM\s*=\s*\S+\s+|DEFINER\s*=\s*\S+\s+|SQL\s+SECURITY\s+\S+\s+)*VIEW\b",
    re.IGNORECASE,
)

COMMITTED_JOB_STATES = ("done", "synced")

_CREATE_DB = re.compile(rf"^CREATE\s+(?:DATABASE|SCHEMA)\s+(IF\s+NOT\s+EXISTS\s+)?({IDENT})", re.I)
_DROP_DB = re.compile(rf"^DROP\s+(?:DATABASE|SCHEMA)\s+(IF\s+EXISTS\s+)?({IDENT})\s*$", re.I)
_USE = re.compile(rf"^USE\s+({IDENT})\s*$", re.I)
_CREATE_TABLE = re.compile(
    rf"^CREATE\s+(?:TEMPORARY\s+)?TABLE\s+(IF\s+NOT\s+EXISTS\s+)?({QNAME})\s*(.*)$", re.I | re.S
)
_LIKE = re.compile(rf"^\(?\s*LIKE\s+({QNAME})\s*\)?\s*$", re.I)
_DROP_TABLE = re.compile(
    r"^DROP\s+(?:TEMPORARY\s+)?TABLES?\s+(IF\s+EXISTS\s+)?(.+?)(?:\s+(?:RESTRICT|CASCADE))?\s*$", re.I | re.S
)
_TRUNCATE = re.compile(rf"^TRUNCATE\s+(?:TABLE\s+)?({QNAME})\s*$", re.I)
_RENAME_TABLE = re.compile(r"^RENAME\s+TABLES?\s+(.+)$", re.I | re.S)
_RENAME_PAIR = re.compile(rf"^({QNAME})\s+TO\s+({QNAME})$", re.I)
_ALTER_TABLE = re.compile(rf"^ALTER\s+(?:(?:ONLINE|OFFLINE|IGNORE)\s+)*TABLE\s+({QNAME})\s*(.*)$", re.I | re.S)

_NOT_A_COLUMN = r"(?!(?:PRIMARY|KEY|INDEX|UNIQUE|CONSTRAINT|FOREIGN|FULLTEXT|SPATIAL|CHECK|PARTITION)\b)"
_ADD_COLUMNS = re.compile(r"^ADD\s+(?:COLUMN\s+)?(IF\s+NOT\s+EXISTS\s+)?\((.*)\)\s*$", re.I | re.S)
_ADD_COLUMN = re.compile(rf"^ADD\s+(?:COLUMN\s+)?(IF\s+NOT\s+EXISTS\s+)?{_NOT_A_COLUMN}({IDENT})\s+(.+)$", re.I | re.S)
_DROP_COLUMN = re.compile(rf"^DROP\s+(?:COLUMN\s+)?(IF\s+EXISTS\s+)?{_NOT_A_COLUMN}({IDENT})\s*(?:RESTRICT|CASCADE)?\s*$", re.I)
_CHANGE_COLUMN = re.compile(rf"^CHANGE\s+(?:COLUMN\s+)?({IDENT})\s+({IDENT})\s+(.+)$", re.I | re.S)
_MODIFY_COLUMN = re.compile(rf"^MODIFY\s+(?:COLUMN\s+)?({IDENT})\s+(.+)$", re.I | re.S)
_RENAME_COLUMN = re.compile(rf"^RENAME\s+COLUMN\s+({IDENT})\s+TO\s+({IDENT})\s*$", re.I)
_RENAME_INDEX = re.compile(r"^RENAME\s+(?:INDEX|KEY)\b", re.I)
_RENAME_TO = re.compile(rf"^RENAME\s+(?:TO\s+|AS\s+)?({QNAME})\s*$", re.I)
_POS_FIRST = re.compile(r"\bFIRST\s*$", re.I)
_POS_AFTER = re.compile(rf"\bAFTER\s+({IDENT})\s*$", re.I)


def unquote(ident: str) -> str:
    ident = ident.strip()
    if len(ident) >= 2 and ident[0] == ident[-1] and ident[0] in "`\"":
        return ident[1:-1].replace("``", "`")
    return ident


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on sep outside of parentheses and quotes."""
    parts = []
    depth = 0
    quote = None
    escaped = False
    start = 0
    for i, ch in enumerate(text):
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\" and quote != "`":
                escaped = True
            elif ch == quote:
                quote = None
        elif ch in "'\"`":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append(text[start:i].strip())
            start = i + 1
    tail = text[start:].strip()
    if tail:
        parts.append(tail)
    return parts


def _paren_body(text: str) -> Optional[str]:
    """Return the contents of the leading parenthesized group, or None."""
    text = text.lstrip()
    if not text.startswith("("):
        return None
    depth = 0
    quote = None
    escaped = False
    for i, ch in enumerate(text):
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\" and quote != "`":
                escaped = True
            elif ch == quote:
                quote = None
        elif ch in "'\"`":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return text[1:i]
    return None


def _column_name(definition: str) -> Optional[str]:
    """Column name of one create-definition, or None for key/constraint clauses."""
    match = re.match(IDENT, definition.strip())
    if not match:
        return None
    token = match.group(0)
    if not token.startswith(("`", '"')) and token.upper() in KEY_CLAUSES:
        return None
    return unquote(token)


def _clean(sql: str) -> str:
    sql = re.sub(r"/\*(?!!).*?\*/", " ", sql, flags=re.S).strip()
    while sql.endswith(";"):
        sql = sql[:-1].rstrip()
    return sql


def _short(sql: str, limit: int = 120) -> str:
    sql = " ".join(sql.split())
    return sql if len(sql) <= limit else sql[:limit] + "..."


class SchemaCatalog:
    """
    Working schema state: databases -> tables -> ordered column names.

    Names of databases and tables are compared case-insensitively; column
    names keep their declared spelling.
    """

    def __init__(self):
        self._dbs: dict[str, dict[str, list[str]]] = {}
        self._current_db = ""
        self.statements_applied = 0

    def reset(self) -> None:
        """Drop all state."""
        self._dbs = {}
        self._current_db = ""
        self.statements_applied = 0

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def databases(self) -> list[str]:
        return sorted(self._dbs)

    def has_database(self, db: str) -> bool:
        return db.lower() in self._dbs

    def tables(self, db: str) -> list[str]:
        return sorted(self._dbs.get(db.lower(), {}))

    def has_table(self, db: str, table: str) -> bool:
        return table.lower() in self._dbs.get(db.lower(), {})

    def columns(self, db: str, table: str) -> Optional[list[str]]:
        """Ordered column names of db.table, or None if unknown."""
        cols = self._dbs.get(db.lower(), {}).get(table.lower())
        return list(cols) if cols is not None else None

    def snapshot(self) -> dict[str, dict[str, list[str]]]:
        """Deep copy of the catalog, for comparing states."""
        return copy.deepcopy(self._dbs)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def apply_jobs(self, jobs: Iterable) -> int:
        """
        Apply history schema jobs in the given order.

        Only jobs in a committed state are applied; rolled back or cancelled
        jobs are skipped.

        Returns:
            Number of jobs applied

        Raises:
            ExecutionError: At the first job that cannot be applied
        """
        applied = 0
        for job in jobs:
            if job.state not in COMMITTED_JOB_STATES:
                logger.info(f"Skip schema job {job.job_id} in state {job.state}")
                continue
            if not job.query:
                raise ExecutionError(f"schema job {job.job_id} has no query to apply")
            try:
                self.apply_statement(job.schema_name, job.query)
            except ExecutionError as e:
                raise ExecutionError(
                    f"apply schema job {job.job_id} (schema version {job.schema_version}) failed: {e.message}"
                ) from e
            applied += 1
        logger.debug(f"Applied {applied} schema jobs")
        return applied

    def apply_statement(self, namespace: str, sql: str) -> None:
        """
        Apply one DDL statement.

        Args:
            namespace: Database for unqualified names; "" uses the database
                selected by the last USE statement
            sql: Statement text

        Raises:
            ExecutionError: If the statement is unsupported or conflicts
                with the current state
        """
        stmt = _clean(sql)
        if not stmt or stmt.startswith(("--", "#", "/*")):
            return

        if NOOP_PREFIXES.match(stmt):
            logger.debug(f"No-op statement: {_short(stmt)}")
            return

        for pattern, handler in (
            (_CREATE_DB, self._create_database),
            (_DROP_DB, self._drop_database),
            (_USE, self._use),
            (_CREATE_TABLE, self._create_table),
            (_DROP_TABLE, self._drop_tables),
            (_TRUNCATE, self._truncate),
            (_RENAME_TABLE, self._rename_tables),
            (_ALTER_TABLE, self._alter_table),
        ):
            match = pattern.match(stmt)
            if match:
                try:
                    handler(namespace, match)
                except ExecutionError as e:
                    raise ExecutionError(f"{e.message} [{_short(stmt)}]") from e
                self.statements_applied += 1
                return

        raise ExecutionError(f"unsupported statement: {_short(stmt)}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resolve(self, namespace: str, qname: str) -> tuple[str, str]:
        parts = split_top_level(qname, ".")
        if len(parts) == 2:
            return unquote(parts[0]).lower(), unquote(parts[1]).lower()
        db = namespace or self._current_db
        if not db:
            raise ExecutionError(f"no database selected for table {unquote(qname)}")
        return db.lower(), unquote(qname).lower()

    def _db(self, name: str) -> dict[str, list[str]]:
        if name not in self._dbs:
            raise ExecutionError(f"unknown database {name}")
        return self._dbs[name]

    def _table(self, db: str, table: str) -> list[str]:
        tables = self._db(db)
        if table not in tables:
            raise ExecutionError(f"table {db}.{table} doesn't exist")
        return tables[table]

    # -------------------------------------------------------------------------
    # Statement handlers
    # -------------------------------------------------------------------------

    def _create_database(self, namespace: str, match: re.Match) -> None:
        name = unquote(match.group(2)).lower()
        if name in self._dbs:
            if match.group(1):
                return
            raise ExecutionError(f"database {name} already exists")
        self._dbs[name] = {}

    def _drop_database(self, namespace: str, match: re.Match) -> None:
        name = unquote(match.group(2)).lower()
        if name not in self._dbs:
            if match.group(1):
                return
            raise ExecutionError(f"unknown database {name}")
        del self._dbs[name]
        if self._current_db == name:
            self._current_db = ""

    def _use(self, namespace: str, match: re.Match) -> None:
        name = unquote(match.group(1)).lower()
        self._db(name)
        self._current_db = name

    def _create_table(self, namespace: str, match: re.Match) -> None:
        if_not_exists = bool(match.group(1))
        db, table = self._resolve(namespace, match.group(2))
        rest = match.group(3).strip()
        tables = self._db(db)
        if table in tables:
            if if_not_exists:
                return
            raise ExecutionError(f"table {db}.{table} already exists")

        like = _LIKE.match(rest)
        if like:
            src_db, src_table = self._resolve(namespace, like.group(1))
            tables[table] = list(self._table(src_db, src_table))
            return

        body = _paren_body(rest)
        if body is None:
            raise ExecutionError(f"cannot read column list of {db}.{table}")
        columns = []
        for definition in split_top_level(body):
            name = _column_name(definition)
            if name is None:
                continue
            if name.lower() in (c.lower() for c in columns):
                raise ExecutionError(f"duplicate column {name} in {db}.{table}")
            columns.append(name)
        if not columns:
            raise ExecutionError(f"table {db}.{table} has no columns")
        tables[table] = columns

    def _drop_tables(self, namespace: str, match: re.Match) -> None:
        if_exists = bool(match.group(1))
        for qname in split_top_level(match.group(2)):
            db, table = self._resolve(namespace, qname)
            tables = self._dbs.get(db)
            if tables is None or table not in tables:
                if if_exists:
                    continue
                raise ExecutionError(f"unknown table {db}.{table}")
            del tables[table]

    def _truncate(self, namespace: str, match: re.Match) -> None:
        db, table = self._resolve(namespace, match.group(1))
        self._table(db, table)

    def _rename_tables(self, namespace: str, match: re.Match) -> None:
        for pair in split_top_level(match.group(1)):
            names = _RENAME_PAIR.match(pair.strip())
            if not names:
                raise ExecutionError(f"cannot parse rename clause: {pair}")
            self._rename(namespace, names.group(1), names.group(2))

    def _rename(self, namespace: str, old: str, new: str) -> None:
        old_db, old_table = self._resolve(namespace, old)
        new_db, new_table = self._resolve(namespace, new)
        columns = self._table(old_db, old_table)
        target = self._db(new_db)
        if new_table in target:
            raise ExecutionError(f"table {new_db}.{new_table} already exists")
        del self._dbs[old_db][old_table]
        target[new_table] = columns

    def _alter_table(self, namespace: str, match: re.Match) -> None:
        db, table = self._resolve(namespace, match.group(1))
        columns = list(self._table(db, table))
        rename_to = None

        for clause in split_top_level(match.group(2)):
            m = _ADD_COLUMNS.match(clause)
            if m:
                for definition in split_top_level(m.group(2)):
                    name = _column_name(definition)
                    if name is None or (m.group(1) and self._has_column(columns, name)):
                        continue
                    self._insert_column(columns, name, "", db, table)
                continue
            m = _ADD_COLUMN.match(clause)
            if m:
                name = unquote(m.group(2))
                if not (m.group(1) and self._has_column(columns, name)):
                    self._insert_column(columns, name, m.group(3), db, table)
                continue
            m = _DROP_COLUMN.match(clause)
            if m:
                name = unquote(m.group(2))
                if m.group(1) and not self._has_column(columns, name):
                    continue
                idx = self._column_index(columns, name, db, table)
                del columns[idx]
                if not columns:
                    raise ExecutionError(f"cannot drop the last column of {db}.{table}")
                continue
            m = _CHANGE_COLUMN.match(clause)
            if m:
                idx = self._column_index(columns, unquote(m.group(1)), db, table)
                del columns[idx]
                self._insert_column(columns, unquote(m.group(2)), m.group(3), db, table, default_index=idx)
                continue
            m = _MODIFY_COLUMN.match(clause)
            if m:
                name = unquote(m.group(1))
                idx = self._column_index(columns, name, db, table)
                del columns[idx]
                self._insert_column(columns, name, m.group(2), db, table, default_index=idx)
                continue
            m = _RENAME_COLUMN.match(clause)
            if m:
                idx = self._column_index(columns, unquote(m.group(1)), db, table)
                new_name = unquote(m.group(2))
                if any(c.lower() == new_name.lower() for i, c in enumerate(columns) if i != idx):
                    raise ExecutionError(f"duplicate column {new_name} in {db}.{table}")
                columns[idx] = new_name
                continue
            if _RENAME_INDEX.match(clause):
                continue
            m = _RENAME_TO.match(clause)
            if m:
                rename_to = m.group(1)
                continue
            # index, constraint, option and partition clauses
            logger.debug(f"Ignore alter clause on {db}.{table}: {_short(clause)}")

        self._dbs[db][table] = columns
        if rename_to is not None:
            qualified = rename_to if "." in rename_to else f"`{db}`.{rename_to}"
            self._rename(namespace, f"`{db}`.`{table}`", qualified)

    @staticmethod
    def _has_column(columns: list[str], name: str) -> bool:
        return any(c.lower() == name.lower() for c in columns)

    @staticmethod
    def _column_index(columns: list[str], name: str, db: str, table: str) -> int:
        for i, col in enumerate(columns):
            if col.lower() == name.lower():
                return i
        raise ExecutionError(f"unknown column {name} in {db}.{table}")

    def _insert_column(
        self,
        columns: list[str],
        name: str,
        definition: str,
        db: str,
        table: str,
        default_index: Optional[int] = None,
    ) -> None:
        if any(c.lower() == name.lower() for c in columns):
            raise ExecutionError(f"duplicate column {name} in {db}.{table}")
        if _POS_FIRST.search(definition):
            columns.insert(0, name)
            return
        after = _POS_AFTER.search(definition)
        if after:
            idx = self._column_index(columns, unquote(after.group(1)), db, table)
            columns.insert(idx + 1, name)
            return
        if default_index is None:
            columns.append(name)
        else:
            columns.insert(default_index, name)
