"""
pitr - Point-in-time recovery merge for TSO-stamped binlog shards.

Discovers binlog shards, keeps those inside a commit TSO window, restores
the schema history as of the window start and merges the shards into one
commit-ordered event file.
"""

__version__ = "0.1.0"


__all__ = ["PITR", "ProcessResult", "PitrConfig", "load_config", "get_pitr_home"]

from .config import PitrConfig, get_pitr_home, load_config
from .orchestrator import PITR, ProcessResult
