from workflow_creator.aggregator import AggregationConflictError, aggregate
from workflow_creator.capabilities import CapabilityIndex, CapabilitySnapshot
from workflow_creator.config import WorkflowConfig, load_config
from workflow_creator.executor import PhaseCoordinator
from workflow_creator.graph import (
    CyclicDependencyError,
    DanglingReferenceError,
    DuplicateTaskError,
    TaskGraph,
    TaskGraphError,
    build_task_graph,
)
from workflow_creator.matcher import WorkerMatcher
from workflow_creator.models import (
    AbortRun,
    Assignment,
    Condition,
    ExecutionResult,
    Task,
    Worker,
    WorkflowResult,
)
from workflow_creator.patterns import PatternClassification, classify
from workflow_creator.workflow import WorkflowCreator, WorkflowPlan, load_workflow_file

__version__ = "0.1.0"

__all__ = [
    "AbortRun",
    "AggregationConflictError",
    "Assignment",
    "CapabilityIndex",
    "CapabilitySnapshot",
    "Condition",
    "CyclicDependencyError",
    "DanglingReferenceError",
    "DuplicateTaskError",
    "ExecutionResult",
    "PatternClassification",
    "PhaseCoordinator",
    "Task",
    "TaskGraph",
    "TaskGraphError",
    "Worker",
    "WorkerMatcher",
    "WorkflowConfig",
    "WorkflowCreator",
    "WorkflowPlan",
    "WorkflowResult",
    "__version__",
    "aggregate",
    "build_task_graph",
    "classify",
    "load_config",
    "load_workflow_file",
]
