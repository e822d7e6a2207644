"""Built-in node executors."""

from flowcore.core.graph_schema import NodeType
from flowcore.core.runtime import ExecutorRegistry
from flowcore.executors.builtin import (
    if_else_executor,
    set_variable_executor,
    stop_workflow_executor,
    trigger_executor,
)
from flowcore.executors.bundle import bundle_workflow_executor
from flowcore.executors.crm import (
    create_contact_executor,
    create_deal_executor,
    update_contact_executor,
    update_deal_executor,
)
from flowcore.executors.records import InMemoryRecordStore, RecordNotFoundError, RecordStore


def default_registry() -> ExecutorRegistry:
    """Registry with every executor shipped with the engine.

    Integration node types (Gmail, Slack, Gemini, ...) are registered by the
    integrations themselves.
    """
    registry = ExecutorRegistry()
    for node_type in NodeType:
        if node_type.is_trigger:
            registry.register(node_type, trigger_executor)

    registry.register(NodeType.SET_VARIABLE, set_variable_executor)
    registry.register(NodeType.IF_ELSE, if_else_executor)
    registry.register(NodeType.STOP_WORKFLOW, stop_workflow_executor)
    registry.register(NodeType.BUNDLE_WORKFLOW, bundle_workflow_executor)

    registry.register(NodeType.CREATE_CONTACT, create_contact_executor)
    registry.register(NodeType.UPDATE_CONTACT, update_contact_executor)
    registry.register(NodeType.CREATE_DEAL, create_deal_executor)
    registry.register(NodeType.UPDATE_DEAL, update_deal_executor)
    return registry


__all__ = [
    "InMemoryRecordStore",
    "RecordNotFoundError",
    "RecordStore",
    "default_registry",
]
