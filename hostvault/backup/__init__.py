"""
Backup module for Hostvault.

This module handles the backup lifecycle:
- Collection into a staging workspace
- Sealing into a checksummed artifact
- Integrity verification
- Retention policy enforcement
- Health aggregation across domains
"""

from .executor import BackupExecutor, RunReport, RunStatus
from .collectors import Collector, CollectorOutcome, OutcomeStatus
from .compression import Archiver
from .storage import LocalStorage
from .retention import RetentionManager
from .health import HealthAggregator, HealthStatus

__all__ = [
    'BackupExecutor',
    'RunReport',
    'RunStatus',
    'Collector',
    'CollectorOutcome',
    'OutcomeStatus',
    'Archiver',
    'LocalStorage',
    'RetentionManager',
    'HealthAggregator',
    'HealthStatus'
]
