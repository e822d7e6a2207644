"""Tests for the workflow graph model.

Tests cover:
- Traversal: upstream/downstream reachability, diamonds, cycles, dangling edges
- Save-time validation: cycles, endpoints, variable names, configs, executor coverage
- Topological ordering
- Document loading and serialization
"""

from __future__ import annotations

import pytest
from helpers import make_edge, make_node
from pydantic import ValidationError

from flowcore.core.graph_schema import (
    ContactConfig,
    IfElseConfig,
    Node,
    NodeConfig,
    NodeType,
    WorkflowDocument,
    downstream_of,
    dump_workflow,
    load_workflow_file,
    upstream_of,
)
from flowcore.executors import default_registry


# =============================================================================
# Traversal Tests
# =============================================================================


class TestTraversal:
    """Tests for upstream_of / downstream_of."""

    def test_linear_chain(self):
        nodes = [make_node("A"), make_node("B"), make_node("C")]
        edges = [make_edge("A", "B"), make_edge("B", "C")]

        assert upstream_of("C", nodes, edges) == {"A", "B"}
        assert downstream_of("A", nodes, edges) == {"B", "C"}
        assert upstream_of("A", nodes, edges) == set()
        assert downstream_of("C", nodes, edges) == set()

    def test_diamond_visits_each_node_once(self, diamond_nodes):
        """A->B, A->C, B->D, C->D: upstream of D is exactly {A, B, C}."""
        nodes, edges = diamond_nodes

        assert upstream_of("D", nodes, edges) == {"A", "B", "C"}
        assert downstream_of("A", nodes, edges) == {"B", "C", "D"}

    def test_node_never_upstream_of_itself_in_dag(self, diamond_nodes):
        nodes, edges = diamond_nodes
        for node in nodes:
            for descendant in downstream_of(node.id, nodes, edges):
                assert node.id not in downstream_of(descendant, nodes, edges)
            assert node.id not in upstream_of(node.id, nodes, edges)

    def test_edges_to_missing_nodes_are_ignored(self):
        nodes = [make_node("A"), make_node("B")]
        edges = [make_edge("A", "B"), make_edge("ghost", "B"), make_edge("B", "deleted")]

        assert upstream_of("B", nodes, edges) == {"A"}
        assert downstream_of("B", nodes, edges) == set()

    def test_cycle_terminates(self):
        nodes = [make_node("A"), make_node("B"), make_node("C")]
        edges = [make_edge("A", "B"), make_edge("B", "C"), make_edge("C", "A")]

        # Reached through the back-edge, so the start is part of the result
        assert upstream_of("A", nodes, edges) == {"A", "B", "C"}
        assert downstream_of("B", nodes, edges) == {"A", "B", "C"}

    def test_document_methods_delegate(self, linear_workflow):
        assert linear_workflow.upstream_of("greeting") == {"trigger", "contact"}
        assert linear_workflow.downstream_of("trigger") == {"contact", "greeting"}
        assert [e.target for e in linear_workflow.outgoing("trigger")] == ["contact"]
        assert [e.source for e in linear_workflow.incoming("greeting")] == ["contact"]


# =============================================================================
# Validation Tests
# =============================================================================


class TestValidateGraph:
    """Tests for save-time validation."""

    def test_valid_document(self, linear_workflow):
        assert linear_workflow.validate_graph(default_registry()) == []

    def test_cycle_detected(self):
        doc = WorkflowDocument(
            id="wf",
            name="Cyclic",
            nodes=[make_node("a"), make_node("b")],
            edges=[make_edge("a", "b"), make_edge("b", "a")],
        )

        errors = doc.validate_graph()
        assert any("Cycle detected" in e for e in errors)

    def test_missing_endpoints_and_self_edge(self):
        doc = WorkflowDocument(
            id="wf",
            name="Broken",
            nodes=[make_node("a")],
            edges=[make_edge("a", "missing"), make_edge("a", "a")],
        )

        errors = doc.validate_graph()
        assert any("target 'missing' not found" in e for e in errors)
        assert any("cannot feed itself" in e for e in errors)

    def test_duplicate_node_ids(self):
        doc = WorkflowDocument(id="wf", name="Dup", nodes=[make_node("a"), make_node("a")])

        assert any("Duplicate node ID" in e for e in doc.validate_graph())

    def test_variable_names_must_be_identifiers(self):
        doc = WorkflowDocument(
            id="wf", name="Names", nodes=[make_node("a", variableName="1st result")]
        )

        assert any("invalid variable name" in e for e in doc.validate_graph())

    def test_variable_names_must_be_unique(self):
        doc = WorkflowDocument(
            id="wf",
            name="Names",
            nodes=[make_node("a", variableName="out"), make_node("b", variableName="out")],
        )

        errors = doc.validate_graph()
        assert any("'out' is declared by multiple nodes" in e for e in errors)

    def test_invalid_node_config(self):
        doc = WorkflowDocument(
            id="wf",
            name="Config",
            nodes=[make_node("check", NodeType.IF_ELSE, variableName="c", operator="between")],
        )

        errors = doc.validate_graph()
        assert any("Node 'check': operator" in e for e in errors)

    def test_unregistered_node_type(self):
        doc = WorkflowDocument(
            id="wf", name="Slack", nodes=[make_node("notify", NodeType.SLACK)]
        )

        assert doc.validate_graph() == []
        errors = doc.validate_graph(default_registry())
        assert errors == ["Node 'notify': no executor registered for type 'SLACK'"]


# =============================================================================
# Ordering Tests
# =============================================================================


class TestTopologicalOrder:
    def test_generations_follow_declaration_order(self, diamond_nodes):
        nodes, edges = diamond_nodes
        # Declare C before B: ties are broken by declaration order
        reordered = [nodes[0], nodes[2], nodes[1], nodes[3]]
        doc = WorkflowDocument(id="wf", name="Diamond", nodes=reordered, edges=edges)

        assert doc.topological_generations() == [["A"], ["C", "B"], ["D"]]
        assert doc.topological_order() == ["A", "C", "B", "D"]

    def test_isolated_nodes_are_included(self):
        doc = WorkflowDocument(id="wf", name="Loose", nodes=[make_node("x"), make_node("y")])

        assert doc.topological_generations() == [["x", "y"]]


# =============================================================================
# Node and Config Tests
# =============================================================================


class TestNodes:
    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            Node(id="", type=NodeType.SET_VARIABLE)

    def test_variable_name_property(self):
        assert make_node("a", variableName="out").variable_name == "out"
        assert make_node("a", variableName="").variable_name is None
        assert make_node("a").variable_name is None

    def test_trigger_types(self):
        assert NodeType.GMAIL_TRIGGER.is_trigger
        assert not NodeType.GMAIL_EXECUTION.is_trigger

    def test_config_uses_camel_case_aliases(self):
        node = make_node(
            "c",
            NodeType.CREATE_CONTACT,
            companyName="Acme",
            type="CUSTOMER",
            customField="kept",
        )

        config = node.config()
        assert isinstance(config, ContactConfig)
        assert config.company_name == "Acme"
        assert config.contact_type == "CUSTOMER"
        assert config.model_extra == {"customField": "kept"}

    def test_types_without_model_use_base_config(self):
        config = make_node("g", NodeType.GEMINI, variableName="ai", prompt="x").config()

        assert type(config) is NodeConfig
        assert config.variable_name == "ai"

    def test_if_else_operator_validated(self):
        with pytest.raises(ValidationError):
            IfElseConfig.model_validate({"operator": "between"})


# =============================================================================
# Loading Tests
# =============================================================================


class TestLoading:
    def test_load_yaml_with_camel_case_keys(self, tmp_path):
        path = tmp_path / "bundle.yaml"
        path.write_text(
            """
id: bundle-1
name: Enrich
isBundle: true
bundleInputs:
  - name: email
    type: string
    defaultValue: nobody@example.com
bundleOutputs:
  - name: domain
    variablePath: parsed.domain
nodes:
  - id: start
    type: MANUAL_TRIGGER
  - id: check
    type: IF_ELSE
    data:
      variableName: hasEmail
      leftOperand: "{{email}}"
      operator: isNotEmpty
edges:
  - id: e1
    source: start
    target: check
    sourceHandle: "true"
"""
        )

        doc = load_workflow_file(path)

        assert doc.is_bundle
        assert doc.bundle_inputs[0].default_value == "nobody@example.com"
        assert doc.bundle_outputs[0].variable_path == "parsed.domain"
        assert doc.edges[0].source_handle == "true"

    def test_load_rejects_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ValueError, match="Expected a mapping"):
            load_workflow_file(path)

    def test_dump_uses_editor_keys(self, branching_workflow):
        data = dump_workflow(branching_workflow)

        assert data["edges"][1]["sourceHandle"] == "true"
        assert "isBundle" in data
        assert WorkflowDocument.model_validate(data) == branching_workflow
