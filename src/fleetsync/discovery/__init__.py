from .reconciliation import ReconciliationEngine
from .registry import ConnectorRegistry, RegisteredConnector
from .scheduler import ConnectorStatus, RunRecord, RunState, Scheduler, TriggerType

__all__ = [
    "ReconciliationEngine",
    "ConnectorRegistry",
    "RegisteredConnector",
    "Scheduler",
    "ConnectorStatus",
    "RunRecord",
    "RunState",
    "TriggerType",
]
