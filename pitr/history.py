"""
Schema History Resolver.

Produces the schema changes needed to bring an empty catalog to the state
just before a run's start TSO. Sources, first match wins:

1. schema_file: every line of the file is one statement, used verbatim
2. store_endpoints: history jobs from a metadata snapshot, keeping jobs
   that finished strictly before the start TSO, in schema-version order
3. neither: no-op (empty FileDDL)
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from pitr.errors import PitrError, PitrIOError
from pitr.schemas import FileDDL, JobDDL, SchemaChangeSource, SchemaJob
from pitr.snapshot import DEFAULT_TIMEOUT, open_snapshot, parse_endpoints

logger = logging.getLogger(__name__)


def select_history_jobs(jobs: list[SchemaJob], start_tso: int) -> list[SchemaJob]:
    """
    Keep jobs with finished_ts < start_tso, ordered by schema version.

    The store lists jobs by job id. Ids are allocated when a change is
    proposed and versions when it commits, so concurrent changes can
    commit out of id order; schema version is the replay order.

    A job finishing exactly at start_tso takes effect at start_tso and is
    left to the binlog itself.
    """
    ordered = sorted(jobs, key=lambda job: job.schema_version)
    kept = []
    for job in ordered:
        if job.finished_ts < start_tso:
            kept.append(job)
        else:
            logger.info(
                f"Ignore history schema job {job.job_id} "
                f"(schema version {job.schema_version}, finished ts {job.finished_ts}, query {job.query!r})"
            )
    return kept


class SchemaHistoryResolver:
    """
    Resolve the schema history for a start TSO.

    Args:
        schema_file: Base-schema export, one statement per line
        store_endpoints: Store status endpoints, comma-separated or a list
        snapshot_opener: Context-manager factory yielding a snapshot handle
        timeout: Per-request timeout for the store
    """

    def __init__(
        self,
        schema_file: Optional[Path] = None,
        store_endpoints=None,
        snapshot_opener: Callable = open_snapshot,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.schema_file = Path(schema_file) if schema_file else None
        self.store_endpoints = store_endpoints
        self._open_snapshot = snapshot_opener
        self._timeout = timeout

    @classmethod
    def from_config(cls, config, **kwargs) -> "SchemaHistoryResolver":
        return cls(
            schema_file=config.schema_file,
            store_endpoints=config.store_endpoints,
            timeout=config.store_timeout,
            **kwargs,
        )

    def resolve(self, start_tso: int) -> SchemaChangeSource:
        """
        Resolve the schema changes to apply before start_tso.

        Raises:
            ConfigError: If the store endpoints are malformed
            SnapshotError: If the store snapshot cannot be read
            PitrIOError: If the schema file cannot be read
        """
        if self.schema_file is not None:
            if self.store_endpoints:
                logger.warning(
                    f"Both schema file and store endpoints are set; using schema file {self.schema_file}"
                )
            statements = self.load_base_schema()
            logger.info(f"Loaded {len(statements)} schema lines from {self.schema_file}")
            return FileDDL(tuple(statements))

        if self.store_endpoints:
            try:
                jobs = self.load_history_jobs(start_tso)
            except PitrError as e:
                e.annotate("load history ddls")
                raise
            logger.info(f"Resolved {len(jobs)} history schema jobs before {start_tso}")
            return JobDDL(tuple(jobs))

        logger.info("No schema history source configured")
        return FileDDL(())

    def load_base_schema(self) -> list[str]:
        """Read the schema file and split it into lines."""
        try:
            content = self.schema_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PitrIOError(f"read schema file {self.schema_file} failed: {e}") from e
        return content.split("\n")

    def load_history_jobs(self, start_tso: int) -> list[SchemaJob]:
        endpoints = parse_endpoints(self.store_endpoints)
        with self._open_snapshot(endpoints, timeout=self._timeout) as snapshot:
            all_jobs = snapshot.list_history_schema_jobs()
        return select_history_jobs(all_jobs, start_tso)
