"""Design-time variable context for the node editor.

Given a node and the graph, computes which variables the node may reference
and an example value for each, so the editor can offer autocomplete for
``{{namespace.path}}`` tokens. Values here are representative shapes, not
runtime data.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from typing import Any, Literal

from pydantic import BaseModel, Field

from flowcore.core.graph_schema import BundleInput, Edge, Node, NodeType, upstream_of

# Arrays in the variable tree only list this many example items
MAX_ARRAY_EXAMPLES = 5

GENERIC_EXAMPLE = {"id": "result-id", "success": True}

PARENT_WORKFLOW_PLACEHOLDER = "ParentWorkflowName"

CONTACT_EXAMPLE = {
    "id": "contact-id",
    "name": "Jane Smith",
    "email": "jane@example.com",
    "phone": "9876543210",
    "companyName": "Example Corp",
    "position": "Manager",
    "type": "LEAD",
    "lifecycleStage": "LEAD",
    "source": "Google Form",
    "country": "United States",
    "city": "New York",
    "createdAt": "2025-01-01T00:00:00.000Z",
}

DEAL_EXAMPLE = {
    "id": "deal-id",
    "name": "Deal Name",
    "value": "10000",
    "currency": "USD",
    "deadline": "2025-01-31T00:00:00.000Z",
    "source": "Inbound Lead",
    "pipelineId": "pipeline-id",
    "pipelineStageId": "stage-id",
    "createdAt": "2025-01-01T00:00:00.000Z",
}

CALENDAR_EXAMPLE = {
    "calendarId": "example@gmail.com",
    "calendarName": "My Calendar",
    "event": {
        "summary": "Meeting Title",
        "description": "Meeting description",
        "attendees": [
            {"email": "attendee1@example.com", "responseStatus": "accepted"},
            {"email": "attendee2@example.com", "responseStatus": "needsAction"},
        ],
        "start": {"dateTime": "2025-01-01T10:00:00Z"},
        "end": {"dateTime": "2025-01-01T11:00:00Z"},
    },
}

# Example output shape per node type
EXAMPLE_OUTPUTS: dict[NodeType, dict[str, Any]] = {
    # Triggers
    NodeType.MANUAL_TRIGGER: {
        "triggeredAt": "2025-01-01T00:00:00.000Z",
        "userId": "user-id",
    },
    NodeType.GOOGLE_FORM_TRIGGER: {
        "formId": "example-id",
        "formTitle": "Contact Form",
        "respondentEmail": "respondent@example.com",
        "timestamp": "2025-01-01T00:00:00.000Z",
        "responses": {},
    },
    NodeType.GOOGLE_CALENDAR_TRIGGER: CALENDAR_EXAMPLE,
    NodeType.GMAIL_TRIGGER: {
        "messageId": "msg-id",
        "threadId": "thread-id",
        "from": "sender@example.com",
        "subject": "Email Subject",
        "body": "Email body content",
        "labels": ["INBOX", "UNREAD"],
    },
    NodeType.TELEGRAM_TRIGGER: {
        "messageId": "123456",
        "chatId": "789",
        "text": "Message text",
        "from": {
            "id": "user-id",
            "username": "username",
            "firstName": "John",
            "lastName": "Doe",
        },
    },
    NodeType.STRIPE_TRIGGER: {
        "eventType": "payment_intent.succeeded",
        "eventId": "evt_xxx",
        "amount": 1000,
        "currency": "usd",
        "customer": "cus_xxx",
    },
    NodeType.CONTACT_CREATED_TRIGGER: CONTACT_EXAMPLE,
    NodeType.DEAL_CREATED_TRIGGER: DEAL_EXAMPLE,
    # CRM
    NodeType.CREATE_CONTACT: CONTACT_EXAMPLE,
    NodeType.UPDATE_CONTACT: CONTACT_EXAMPLE,
    NodeType.CREATE_DEAL: DEAL_EXAMPLE,
    NodeType.UPDATE_DEAL: DEAL_EXAMPLE,
    # Control flow
    NodeType.SET_VARIABLE: {"value": "example value"},
    NodeType.IF_ELSE: {
        "result": True,
        "leftValue": "example",
        "rightValue": "example",
        "operator": "equals",
        "branchToFollow": "true",
    },
    NodeType.BUNDLE_WORKFLOW: {"result": {"key": "value"}},
    # Calendar
    NodeType.GOOGLE_CALENDAR_EXECUTION: {
        "eventId": "event-id",
        "summary": "Event Title",
        "start": "2025-01-01T10:00:00Z",
        "end": "2025-01-01T11:00:00Z",
        "attendees": [],
    },
    # Messaging
    NodeType.GMAIL_EXECUTION: {"messageId": "msg-id", "threadId": "thread-id", "success": True},
    NodeType.TELEGRAM_EXECUTION: {"messageId": "msg-id", "success": True},
    NodeType.DISCORD: {"messageId": "msg-id", "channelId": "channel-id", "success": True},
    NodeType.SLACK: {"messageId": "msg-id", "channelId": "channel-id", "success": True},
    # AI
    NodeType.GEMINI: {"response": "AI generated response", "tokensUsed": 100},
}

# Placeholder per declared bundle input type (case-insensitive)
TYPE_PLACEHOLDERS: dict[str, Any] = {
    "string": "example text",
    "number": 42,
    "boolean": True,
    "array": ["item1", "item2"],
    "object": {"key": "value"},
    "date": "2025-01-01T00:00:00.000Z",
}


class BundleOptions(BaseModel):
    """Caller-supplied bundle relationship for a node inside a sub-workflow."""

    is_bundle: bool = False
    bundle_inputs: list[BundleInput] = Field(default_factory=list)
    bundle_workflow_name: str | None = None
    parent_workflow_context: dict[str, dict[str, Any]] = Field(default_factory=dict)


class VariableItem(BaseModel):
    """Entry in the editor's variable picker."""

    path: str
    label: str
    type: Literal["primitive", "object", "array"]
    children: list[VariableItem] | None = None


VariableItem.model_rebuild()


def example_value_for_type(type_name: str) -> Any:
    """Example value for a declared bundle input type."""
    return copy.deepcopy(TYPE_PLACEHOLDERS.get(type_name.lower(), "example value"))


def example_output_for_node(node: Node) -> dict[str, Any]:
    """Representative output of ``node``; unknown types get a generic placeholder."""
    example = copy.deepcopy(EXAMPLE_OUTPUTS.get(node.type, GENERIC_EXAMPLE))

    if node.type == NodeType.GOOGLE_FORM_TRIGGER:
        form_fields = node.data.get("formFields")
        if isinstance(form_fields, list):
            for field_name in form_fields:
                example["responses"][str(field_name)] = f"Example value for {field_name}"

    return example


def build_example_context(
    node_id: str,
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    bundle_options: BundleOptions | None = None,
) -> dict[str, Any]:
    """Variables visible to ``node_id`` mapped to example values."""
    context: dict[str, Any] = {}
    upstream = upstream_of(node_id, nodes, edges)

    # Declaration order keeps the picker stable between renders
    for node in nodes:
        if node.id not in upstream or node.id == node_id:
            continue
        variable_name = node.variable_name
        if not variable_name:
            continue
        context[variable_name] = example_output_for_node(node)

    if bundle_options and bundle_options.is_bundle:
        for bundle_input in bundle_options.bundle_inputs:
            if bundle_input.default_value is not None:
                context[bundle_input.name] = copy.deepcopy(bundle_input.default_value)
            else:
                context[bundle_input.name] = example_value_for_type(bundle_input.type)

        if bundle_options.parent_workflow_context:
            for workflow_name, variables in bundle_options.parent_workflow_context.items():
                context[workflow_name] = copy.deepcopy(variables)
        else:
            # No parent workflow uses this bundle yet: show the expected shape
            placeholder_name = bundle_options.bundle_workflow_name or PARENT_WORKFLOW_PLACEHOLDER
            context[placeholder_name] = {
                "nodeName1": {"field1": "example value", "field2": 123},
                "nodeName2": {"result": "example result"},
            }

    return context


def build_variable_tree(
    obj: Mapping[str, Any], parent_path: str = ""
) -> list[VariableItem]:
    """Convert a context mapping into the picker tree (nested objects and arrays)."""
    items: list[VariableItem] = []

    for key, value in obj.items():
        path = f"{parent_path}.{key}" if parent_path else str(key)

        if isinstance(value, Mapping):
            children = build_variable_tree(value, path)
            items.append(
                VariableItem(path=path, label=str(key), type="object", children=children or None)
            )
        elif isinstance(value, (list, tuple)):
            children = []
            for index, item in enumerate(value[:MAX_ARRAY_EXAMPLES]):
                item_path = f"{path}.{index}"
                if isinstance(item, Mapping):
                    children.append(
                        VariableItem(
                            path=item_path,
                            label=f"[{index}]",
                            type="object",
                            children=build_variable_tree(item, item_path) or None,
                        )
                    )
                else:
                    children.append(
                        VariableItem(path=item_path, label=f"[{index}]", type="primitive")
                    )
            items.append(
                VariableItem(path=path, label=str(key), type="array", children=children or None)
            )
        else:
            items.append(VariableItem(path=path, label=str(key), type="primitive"))

    return items


def build_context(
    node_id: str,
    nodes: Sequence[Node],
    edges: Sequence[Edge],
    bundle_options: BundleOptions | None = None,
) -> list[VariableItem]:
    """Variable namespaces ``node_id`` may reference; empty when none exist."""
    context = build_example_context(node_id, nodes, edges, bundle_options)
    if not context:
        return []
    return build_variable_tree(context)
