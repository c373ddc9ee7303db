"""Managers: session ownership, restore, query and maintenance"""

from .base import BaseManager, ManagerState, ManagerError, ManagerNotReadyError, HealthStatus
from .session import SessionManager, EvictionReport, EXPORT_FORMAT
from .restore import RestoreEngine, RestoreOutcome, RestoreReport
from .query import QueryEngine, RecordInfo, ChainStats, CheckpointStats
from .maintenance import MaintenanceEngine

__all__ = [
    'BaseManager',
    'ManagerState',
    'ManagerError',
    'ManagerNotReadyError',
    'HealthStatus',
    'SessionManager',
    'EvictionReport',
    'EXPORT_FORMAT',
    'RestoreEngine',
    'RestoreOutcome',
    'RestoreReport',
    'QueryEngine',
    'RecordInfo',
    'ChainStats',
    'CheckpointStats',
    'MaintenanceEngine',
]
