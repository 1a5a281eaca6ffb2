"""
PITR orchestrator - runs one point-in-time recovery merge.

State machine of a run:

    DISCOVERING -> WINDOW_RESOLVED -> HISTORY_RESOLVED -> MAPPED
        -> HISTORY_REAPPLIED -> REDUCED -> CLOSED

A map that finds no event inside the window goes straight to CLOSED
without the second history pass or reduce; that is a successful run.
Every failure also ends in CLOSED: the merge engine, once opened, is
closed on every path, and an error from closing never hides the error
that stopped the run.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from pitr.catalog import SchemaCatalog
from pitr.config import PitrConfig
from pitr.ddl_handler import DDLExecutionHandler
from pitr.errors import NoFilesFound, NoFilesInWindow, PitrError, PitrIOError
from pitr.filter import EventFilter
from pitr.history import SchemaHistoryResolver
from pitr.merge import MergeEngine, ReduceResult
from pitr.shards import discover_files, filter_by_window, first_commit_ts_and_size
from pitr.window import Window

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    DISCOVERING = "discovering"
    WINDOW_RESOLVED = "window_resolved"
    HISTORY_RESOLVED = "history_resolved"
    MAPPED = "mapped"
    HISTORY_REAPPLIED = "history_reapplied"
    REDUCED = "reduced"
    CLOSED = "closed"


@dataclass
class ProcessResult:
    """Summary of one run."""
    window: Optional[Window] = None
    shard_count: int = 0
    total_size: int = 0
    found_events: bool = False
    output_path: Optional[Path] = None
    events_written: int = 0
    reduce: Optional[ReduceResult] = None
    states: list[RunState] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def reduced(self) -> bool:
        return RunState.REDUCED in self.states

    def to_dict(self) -> dict[str, Any]:
        result = {
            "start_tso": self.window.start_tso if self.window else None,
            "stop_tso": self.window.stop_tso if self.window else None,
            "shard_count": self.shard_count,
            "total_size": self.total_size,
            "found_events": self.found_events,
            "events_written": self.events_written,
            "states": [s.value for s in self.states],
            "duration_ms": self.duration_ms,
        }
        if self.output_path is not None:
            result["output_path"] = str(self.output_path)
        if self.reduce is not None:
            result["reduce"] = self.reduce.to_dict()
        return result


@contextmanager
def _phase(name: str) -> Iterator[None]:
    """Annotate errors raised in the block with the phase name."""
    try:
        yield
    except PitrError as e:
        e.annotate(name)
        raise
    except OSError as e:
        raise PitrIOError(str(e), phase=name) from e


class PITR:
    """
    Point-in-time recovery merge over one binlog directory.

    Usage:
        config = load_config(path)
        config.validate()
        result = PITR(config).process()

    Args:
        config: Validated configuration
        resolver: Schema history resolver (built from config if None)
        catalog: Working schema catalog shared by the DDL handler and the
            merge engine (a new one if None)
        merge_factory: Callable with MergeEngine.open's signature
    """

    def __init__(
        self,
        config: PitrConfig,
        resolver: Optional[SchemaHistoryResolver] = None,
        catalog: Optional[SchemaCatalog] = None,
        merge_factory: Optional[Callable[..., MergeEngine]] = None,
    ):
        logger.info(f"New PITR, config: {config}")
        self.config = config
        self.filter = EventFilter(config.ignore_dbs, config.ignore_tables, config.do_dbs, config.do_tables)
        self.resolver = resolver or SchemaHistoryResolver.from_config(config)
        self.catalog = catalog if catalog is not None else SchemaCatalog()
        self.ddl_handler = DDLExecutionHandler(self.catalog)
        self._merge_factory = merge_factory or MergeEngine.open
        self.state = RunState.DISCOVERING
        self._result = ProcessResult()

    def _transition(self, state: RunState) -> None:
        logger.debug(f"PITR state {self.state.value} -> {state.value}", extra={"event": state.value})
        self.state = state
        self._result.states.append(state)

    def process(self) -> ProcessResult:
        """
        Run the whole pipeline.

        Returns:
            ProcessResult describing what was done

        Raises:
            DiscoveryError: No shard file, or none inside the window
            ConfigError, SnapshotError, ExecutionError, DecodeError,
            PitrIOError: From the phase named in the error's .phase
        """
        started = time.time()
        self._result = ProcessResult()
        self._transition(RunState.DISCOVERING)
        try:
            return self._process()
        except PitrError as e:
            logger.error(f"PITR failed: {e}", extra={"phase": e.phase})
            raise
        finally:
            if self.state != RunState.CLOSED:
                self._transition(RunState.CLOSED)
            self._result.duration_ms = int((time.time() - started) * 1000)

    def _process(self) -> ProcessResult:
        cfg = self.config
        result = self._result

        with _phase("search files"):
            files = discover_files(cfg.data_dir)
            if not files:
                raise NoFilesFound(str(cfg.data_dir))

        with _phase("filter files"):
            shards, total_size = filter_by_window(files, cfg.start_tso, cfg.stop_tso)
            if not shards:
                raise NoFilesInWindow(str(cfg.data_dir), cfg.start_tso, cfg.stop_tso)
        result.shard_count = len(shards)
        result.total_size = total_size

        start_tso = cfg.start_tso
        if start_tso == 0:
            with _phase("get first binlog commit ts"):
                start_tso, _ = first_commit_ts_and_size(shards[0].path)
            logger.info(f"Start TSO not set, using first commit ts {start_tso} of {shards[0].path}")
        with _phase("resolve window"):
            window = Window(start_tso, cfg.stop_tso)
        if window.unbounded:
            logger.info(f"Stop TSO not set, merging everything from {window.start_tso}")
        result.window = window
        self._transition(RunState.WINDOW_RESOLVED)

        with _phase("load history ddls"):
            history = self.resolver.resolve(window.start_tso)
        self._transition(RunState.HISTORY_RESOLVED)

        with _phase("open merge"):
            merge = self._merge_factory(
                shards,
                total_size,
                temp_dir=cfg.temp_dir,
                catalog=self.catalog,
                event_filter=self.filter,
                dest_dir=cfg.dest_dir,
                map_workers=cfg.map_workers,
            )

        try:
            with _phase("execute history ddls"):
                self.ddl_handler.execute(history)

            with _phase("map"):
                result.found_events = merge.map(window)
            self._transition(RunState.MAPPED)

            if not result.found_events:
                logger.info(f"no event is found between {window}")
            else:
                with _phase("re-execute history ddls"):
                    self.ddl_handler.execute(history)
                self._transition(RunState.HISTORY_REAPPLIED)

                with _phase("reduce"):
                    reduced = merge.reduce()
                result.reduce = reduced
                result.output_path = reduced.output_path
                result.events_written = reduced.events_written
                self._transition(RunState.REDUCED)
        except BaseException:
            self._close_merge(merge, quiet=True)
            raise
        self._close_merge(merge, quiet=False)
        return result

    def _close_merge(self, merge: MergeEngine, quiet: bool) -> None:
        """Close the engine; with quiet, a close failure is logged instead of raised."""
        try:
            with _phase("close merge"):
                merge.close(self.config.reserve_temp_dir)
        except Exception as e:
            if not quiet:
                raise
            logger.error(f"Close merge failed after an earlier error: {e}", extra={"phase": "close merge"})
        finally:
            self._transition(RunState.CLOSED)

    def close(self) -> None:
        """Release the PITR object. Runs hold no state between process() calls."""
        self.catalog.reset()
