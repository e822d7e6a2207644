"""Core components: graph model, templates, context builder, runtime."""

from flowcore.core.config import ConfigError, EngineConfig, load_config
from flowcore.core.context_builder import (
    BundleOptions,
    VariableItem,
    build_context,
    build_example_context,
    build_variable_tree,
)
from flowcore.core.graph_schema import (
    Edge,
    Node,
    NodeType,
    WorkflowDocument,
    WorkflowValidationError,
    downstream_of,
    load_workflow_file,
    upstream_of,
)
from flowcore.core.models import ExecutionStatus, RunResult, RunStatus
from flowcore.core.rename import propagate_rename
from flowcore.core.runtime import (
    ExecutorInput,
    ExecutorRegistry,
    ExecutorServices,
    NonRetriableError,
    StatusChannel,
    WorkflowRunner,
    WorkflowStopped,
    node_executor,
)
from flowcore.core.state import Database
from flowcore.core.templates import rename_variable, resolve, resolve_value

__all__ = [
    "BundleOptions",
    "ConfigError",
    "Database",
    "Edge",
    "EngineConfig",
    "ExecutionStatus",
    "ExecutorInput",
    "ExecutorRegistry",
    "ExecutorServices",
    "Node",
    "NodeType",
    "NonRetriableError",
    "RunResult",
    "RunStatus",
    "StatusChannel",
    "VariableItem",
    "WorkflowDocument",
    "WorkflowRunner",
    "WorkflowStopped",
    "WorkflowValidationError",
    "build_context",
    "build_example_context",
    "build_variable_tree",
    "downstream_of",
    "load_config",
    "load_workflow_file",
    "node_executor",
    "propagate_rename",
    "rename_variable",
    "resolve",
    "resolve_value",
    "upstream_of",
]
