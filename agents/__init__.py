from .audit import AuditRecord, audited
from .base import BaseAgent
from .executor import ExecutorAgent
from .orchestrator import OrchestratorAgent
from .planner import PlannerAgent
from .repairer import RepairAgent
from .validator import ValidatorAgent

__all__ = [
    "AuditRecord",
    "BaseAgent",
    "ExecutorAgent",
    "OrchestratorAgent",
    "PlannerAgent",
    "RepairAgent",
    "ValidatorAgent",
    "audited",
]
