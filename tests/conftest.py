# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowcore test suite.

Provides:
- Temporary state databases
- Sample workflow documents (linear chain, diamond, branching, bundle)
- In-memory record store and executor services
- Recording executors for runtime tests

All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from helpers import make_edge, make_node

from flowcore.core.graph_schema import Edge, Node, NodeType, WorkflowDocument
from flowcore.core.runtime import ExecutorInput, ExecutorServices, node_executor
from flowcore.core.state import Database
from flowcore.executors import InMemoryRecordStore


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh SQLite state database in a temporary directory."""
    return Database(tmp_path / "state.db")


# =============================================================================
# Workflow Document Fixtures
# =============================================================================


@pytest.fixture
def linear_workflow() -> WorkflowDocument:
    """Trigger -> create contact -> set variable referencing the contact."""
    return WorkflowDocument(
        id="wf-linear",
        name="Lead Intake",
        nodes=[
            make_node("trigger", NodeType.GOOGLE_FORM_TRIGGER, variableName="form"),
            make_node(
                "contact",
                NodeType.CREATE_CONTACT,
                variableName="newContact",
                name="{{form.responses.Name}}",
                email="{{form.responses.Email}}",
            ),
            make_node(
                "greeting",
                NodeType.SET_VARIABLE,
                variableName="greeting",
                value="Welcome {{newContact.name}}",
            ),
        ],
        edges=[make_edge("trigger", "contact"), make_edge("contact", "greeting")],
    )


@pytest.fixture
def diamond_nodes() -> tuple[list[Node], list[Edge]]:
    """A->B, A->C, B->D, C->D."""
    nodes = [
        make_node("A", NodeType.MANUAL_TRIGGER, variableName="start"),
        make_node("B", variableName="left", value="{{start.userId}}"),
        make_node("C", variableName="right", value="{{start.triggeredAt}}"),
        make_node("D", variableName="joined", value="{{left}}-{{right}}"),
    ]
    edges = [
        make_edge("A", "B"),
        make_edge("A", "C"),
        make_edge("B", "D"),
        make_edge("C", "D"),
    ]
    return nodes, edges


@pytest.fixture
def branching_workflow() -> WorkflowDocument:
    """Trigger -> if/else on the amount -> big | small."""
    return WorkflowDocument(
        id="wf-branch",
        name="Order Router",
        nodes=[
            make_node("trigger", NodeType.STRIPE_TRIGGER, variableName="payment"),
            make_node(
                "check",
                NodeType.IF_ELSE,
                variableName="isLarge",
                leftOperand="{{payment.amount}}",
                operator="greaterThan",
                rightOperand="100",
            ),
            make_node("big", variableName="tier", value="enterprise"),
            make_node("small", variableName="smallTier", value="self-serve"),
        ],
        edges=[
            make_edge("trigger", "check"),
            make_edge("check", "big", "true"),
            make_edge("check", "small", "false"),
        ],
    )


@pytest.fixture
def bundle_workflow() -> WorkflowDocument:
    """Bundle computing a label from its input and the caller's context."""
    return WorkflowDocument(
        id="bundle-label",
        name="Label Maker",
        is_bundle=True,
        bundle_inputs=[
            {"name": "customer", "type": "string"},
            {"name": "prefix", "type": "string", "defaultValue": "VIP"},
        ],
        bundle_outputs=[{"name": "label", "variablePath": "label"}],
        nodes=[
            make_node("start", NodeType.MANUAL_TRIGGER),
            make_node("make-label", variableName="label", value="{{prefix}}: {{customer}}"),
        ],
        edges=[make_edge("start", "make-label")],
    )


# =============================================================================
# Services and Executors
# =============================================================================


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore(organization_id="org-1")


@pytest.fixture
def services(record_store) -> ExecutorServices:
    return ExecutorServices(record_store=record_store)


@pytest.fixture
def call_log() -> list[str]:
    """Node ids in the order their executors were invoked."""
    return []


@pytest.fixture
def recording_executor(call_log):
    """Executor publishing ``{"node": id}`` and logging the invocation."""

    @node_executor
    async def executor(inp: ExecutorInput) -> dict[str, Any]:
        call_log.append(inp.node_id)
        return {"node": inp.node_id}

    return executor


@pytest.fixture
def failing_executor(call_log):
    """Executor that always raises RuntimeError."""

    @node_executor
    async def executor(inp: ExecutorInput) -> dict[str, Any]:
        call_log.append(inp.node_id)
        raise RuntimeError(f"{inp.node_id} exploded")

    return executor
