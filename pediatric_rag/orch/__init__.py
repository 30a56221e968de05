"""
Orchestration for the pediatric RAG engine.

- state: The per-request WorkflowState and the tagged result type of each step
- workflow: The validated linear step graph and its executor
- steps: The canonical seven-step workflow
- monitor: A progress observer for interactive use
"""

from .state import WorkflowState
from .workflow import Workflow, WorkflowObserver, WorkflowStep
from .steps import STEP_ORDER, WorkflowComponents, build_workflow
from .monitor import QueryMonitor

__all__ = [
    "STEP_ORDER",
    "QueryMonitor",
    "Workflow",
    "WorkflowComponents",
    "WorkflowObserver",
    "WorkflowState",
    "WorkflowStep",
    "build_workflow",
]
