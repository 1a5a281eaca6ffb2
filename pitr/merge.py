"""
Merge Engine - two-phase combination of shards into one ordered stream.

Lifecycle of one run:

    engine = MergeEngine.open(shards, total_size, catalog=catalog, ...)
    try:
        if engine.map(window):
            engine.reduce()
    finally:
        engine.close(preserve_temp_dir)

map: every shard is scanned on its own worker thread. Events outside the
window or rejected by the table filter are dropped; the rest are sorted by
commit TSO and staged as one run file per shard in the temp directory.
All workers are joined before map returns.

reduce: the staged runs are k-way merged by commit TSO into a single output
file. DDL events are applied to the shared catalog in commit order, and DML
row images are bound to the column names current at that point.
"""

import heapq
import json
import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pitr.catalog import SchemaCatalog
from pitr.errors import ExecutionError, PitrIOError
from pitr.events import DML, Event, encode_event, read_events, write_events
from pitr.filter import EventFilter
from pitr.shards import ShardFile
from pitr.window import Window, is_acceptable

logger = logging.getLogger(__name__)

MERGED_FILE_NAME = "pitr-merged.jsonl"
TEMP_DIR_PREFIX = "pitr-merge-"
STAGE_DIR_NAME = "map"
DEFAULT_MAP_WORKERS = 4


@dataclass
class MergeState:
    """Working state of one merge, owned by its MergeEngine."""
    temp_dir: Path
    staged: list[Path] = field(default_factory=list)
    events_scanned: int = 0
    events_kept: int = 0
    mapped: bool = False
    closed: bool = False


@dataclass
class ShardMapResult:
    """Outcome of mapping one shard."""
    shard: ShardFile
    scanned: int
    kept: int
    staged_path: Optional[Path] = None


@dataclass
class ReduceResult:
    """Summary of the reduce phase."""
    output_path: Path
    events_written: int = 0
    ddl_applied: int = 0
    rows_bound: int = 0
    first_commit_ts: Optional[int] = None
    last_commit_ts: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "output_path": str(self.output_path),
            "events_written": self.events_written,
            "ddl_applied": self.ddl_applied,
            "rows_bound": self.rows_bound,
            "first_commit_ts": self.first_commit_ts,
            "last_commit_ts": self.last_commit_ts,
        }


class MergeEngine:
    """
    Map/reduce over a filtered shard list.

    Use MergeEngine.open() to create one; close() must be called exactly
    once the run is over, whatever happened in between.
    """

    def __init__(
        self,
        shards: list[ShardFile],
        total_size: int,
        state: MergeState,
        catalog: Optional[SchemaCatalog] = None,
        event_filter: Optional[EventFilter] = None,
        dest_dir: Path = Path("."),
        map_workers: int = DEFAULT_MAP_WORKERS,
    ):
        self.shards = list(shards)
        self.total_size = total_size
        self.state = state
        self.catalog = catalog if catalog is not None else SchemaCatalog()
        self.event_filter = event_filter or EventFilter()
        self.dest_dir = Path(dest_dir)
        self.map_workers = max(1, map_workers)

    @classmethod
    def open(
        cls,
        shards: list[ShardFile],
        total_size: int,
        temp_dir: Optional[Path] = None,
        **kwargs,
    ) -> "MergeEngine":
        """
        Create the temp directory and return a ready engine.

        Args:
            shards: Shards to merge, as returned by filter_by_window
            total_size: Total size of the shards in bytes
            temp_dir: Parent directory for the working directory
                (system temp directory if None)
            **kwargs: catalog, event_filter, dest_dir, map_workers

        Raises:
            PitrIOError: If the temp filesystem has less free space than
                total_size, or the directory cannot be created
        """
        parent = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())
        try:
            parent.mkdir(parents=True, exist_ok=True)
            free = shutil.disk_usage(parent).free
        except OSError as e:
            raise PitrIOError(f"prepare temp directory under {parent} failed: {e}") from e
        if free < total_size:
            raise PitrIOError(
                f"not enough space under {parent}: need {total_size} bytes, {free} available"
            )

        try:
            work_dir = Path(tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX, dir=parent))
            (work_dir / STAGE_DIR_NAME).mkdir()
        except OSError as e:
            raise PitrIOError(f"create temp directory under {parent} failed: {e}") from e

        logger.info(f"Merge of {len(shards)} binlog files ({total_size} bytes) working in {work_dir}")
        return cls(shards, total_size, MergeState(temp_dir=work_dir), **kwargs)

    # -------------------------------------------------------------------------
    # Map
    # -------------------------------------------------------------------------

    def map(self, window: Window) -> bool:
        """
        Scan all shards and stage their in-window events.

        Returns:
            True if at least one event was staged, False if none of the
            shards holds an acceptable event

        Raises:
            DecodeError: On malformed shard content
            PitrIOError: On read or write failures
        """
        self._check_open()
        workers = min(self.map_workers, max(1, len(self.shards)))
        results: list[ShardMapResult] = []

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pitr-map") as pool:
            futures = [
                pool.submit(self._map_shard, index, shard, window)
                for index, shard in enumerate(self.shards)
            ]
            try:
                for future in futures:
                    results.append(future.result())
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

        self.state.staged = [r.staged_path for r in results if r.staged_path is not None]
        self.state.events_scanned = sum(r.scanned for r in results)
        self.state.events_kept = sum(r.kept for r in results)
        self.state.mapped = True

        logger.info(
            f"Map done: {self.state.events_kept} of {self.state.events_scanned} events "
            f"in {window} from {len(self.state.staged)} binlog files"
        )
        return self.state.events_kept > 0

    def _map_shard(self, index: int, shard: ShardFile, window: Window) -> ShardMapResult:
        scanned = 0
        kept: list[Event] = []
        for event in read_events(shard.path):
            scanned += 1
            if not is_acceptable(event.commit_ts, window.start_tso, window.stop_tso):
                continue
            if self.event_filter.skip_event(event):
                continue
            kept.append(event)

        if not kept:
            logger.debug(f"No event in {window} from {shard.path}")
            return ShardMapResult(shard, scanned, 0)

        kept.sort(key=lambda e: e.commit_ts)
        staged_path = self.state.temp_dir / STAGE_DIR_NAME / f"{index:05d}.jsonl"
        write_events(staged_path, iter(kept))
        logger.debug(f"Staged {len(kept)} events from {shard.path} to {staged_path}")
        return ShardMapResult(shard, scanned, len(kept), staged_path)

    # -------------------------------------------------------------------------
    # Reduce
    # -------------------------------------------------------------------------

    def reduce(self) -> ReduceResult:
        """
        Merge the staged runs into dest_dir/pitr-merged.jsonl in commit order.

        Equal commit TSOs keep the order of the shards they came from.

        Raises:
            ExecutionError: If a DDL event cannot be applied to a database
                the catalog tracks
            PitrIOError: On read or write failures
        """
        self._check_open()
        if not self.state.mapped:
            raise RuntimeError("reduce() called before map()")

        try:
            self.dest_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PitrIOError(f"create output directory {self.dest_dir} failed: {e}") from e

        output_path = self.dest_dir / MERGED_FILE_NAME
        partial_path = self.dest_dir / f".{MERGED_FILE_NAME}.partial"
        result = ReduceResult(output_path=output_path)
        runs = [read_events(path) for path in self.state.staged]
        warned: set[tuple[str, str]] = set()

        try:
            with open(partial_path, "w", encoding="utf-8") as out:
                for event in heapq.merge(*runs, key=lambda e: e.commit_ts):
                    if event.is_ddl:
                        if self._apply_stream_ddl(event):
                            result.ddl_applied += 1
                        out.write(encode_event(event))
                    else:
                        line, bound = self._bind_row(event, warned)
                        result.rows_bound += bound
                        out.write(line)
                    out.write("\n")

                    if result.first_commit_ts is None:
                        result.first_commit_ts = event.commit_ts
                    result.last_commit_ts = event.commit_ts
                    result.events_written += 1
            os.replace(partial_path, output_path)
        except OSError as e:
            raise PitrIOError(f"write {output_path} failed: {e}") from e
        finally:
            for run in runs:
                run.close()
            if partial_path.exists():
                partial_path.unlink()

        logger.info(
            f"Reduce done: {result.events_written} events written to {output_path} "
            f"(commit ts {result.first_commit_ts} to {result.last_commit_ts})",
            extra={"phase": "reduce", "metadata": result.to_dict()},
        )
        return result

    def _apply_stream_ddl(self, event: Event) -> bool:
        """Apply a DDL event to the catalog. Returns False if its database is untracked."""
        try:
            self.catalog.apply_statement(event.db, event.query)
        except ExecutionError as e:
            if event.db and not self.catalog.has_database(event.db):
                logger.warning(f"Schema of untracked database {event.db} not followed at {event.commit_ts}: {e}")
                return False
            raise ExecutionError(f"apply ddl at commit ts {event.commit_ts} failed: {e.message}") from e
        return True

    def _bind_row(self, event: Event, warned: set) -> tuple[str, int]:
        """Encode a DML event, adding a named row when the schema is known."""
        if event.kind != DML or event.values is None:
            return encode_event(event), 0
        columns = self.catalog.columns(event.db, event.table)
        if columns is None:
            return encode_event(event), 0
        if len(columns) != len(event.values):
            key = (event.db, event.table)
            if key not in warned:
                warned.add(key)
                logger.warning(
                    f"{event.db}.{event.table}: {len(event.values)} values for {len(columns)} columns "
                    f"at commit ts {event.commit_ts}, rows left unbound"
                )
            return encode_event(event), 0

        record = event.to_dict()
        record["row"] = dict(zip(columns, event.values))
        return json.dumps(record, separators=(",", ":"), default=str), 1

    # -------------------------------------------------------------------------
    # Close
    # -------------------------------------------------------------------------

    def close(self, preserve_temp_dir: bool = False) -> None:
        """
        Release the working directory.

        Args:
            preserve_temp_dir: Leave the staged files on disk for inspection

        Raises:
            PitrIOError: If the directory cannot be removed
        """
        if self.state.closed:
            logger.debug("Merge already closed")
            return
        self.state.closed = True

        if preserve_temp_dir:
            logger.info(f"Temp directory kept at {self.state.temp_dir}")
            return
        try:
            shutil.rmtree(self.state.temp_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PitrIOError(f"remove temp directory {self.state.temp_dir} failed: {e}") from e
        logger.debug(f"Removed temp directory {self.state.temp_dir}")

    def _check_open(self) -> None:
        if self.state.closed:
            raise RuntimeError("merge engine is closed")
