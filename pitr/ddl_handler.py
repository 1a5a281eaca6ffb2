"""
DDL Execution Handler.

Applies a resolved schema history to the working catalog. The orchestrator
calls execute() twice per run (before map and before reduce), so execute()
always rebuilds the catalog from scratch: calling it again with the same
source yields the same catalog state.
"""

import logging

from pitr.catalog import SchemaCatalog
from pitr.errors import ExecutionError
from pitr.schemas import FileDDL, JobDDL, SchemaChangeSource

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = ""


class DDLExecutionHandler:
    """Replays a SchemaChangeSource into a SchemaCatalog."""

    def __init__(self, catalog: SchemaCatalog):
        self.catalog = catalog
        self.executions = 0

    def execute(self, source: SchemaChangeSource) -> None:
        """
        Reset the catalog and apply the source.

        Raises:
            ExecutionError: At the first operation that fails; later
                operations are not attempted
            TypeError: If source is not a FileDDL or JobDDL
        """
        self.catalog.reset()
        self.executions += 1

        if isinstance(source, JobDDL):
            applied = self.catalog.apply_jobs(source.jobs)
            logger.info(f"Applied {applied} of {len(source.jobs)} history schema jobs")
        elif isinstance(source, FileDDL):
            for lineno, sql in enumerate(source.statements, start=1):
                try:
                    self.catalog.apply_statement(DEFAULT_NAMESPACE, sql)
                except ExecutionError as e:
                    raise ExecutionError(f"schema statement {lineno}: {e.message}") from e
            logger.info(
                f"Applied {self.catalog.statements_applied} schema statements "
                f"from {len(source.statements)} lines"
            )
        else:
            raise TypeError(f"unknown schema change source: {type(source).__name__}")
