"""Tests for the built-in executors.

Tests cover:
- Triggers, set-variable, if/else operators, stop-workflow
- CRM create/update for contacts and deals (validation, scope, durability)
- Bundle workflows (input mappings, defaults, parent context, outputs)
"""

from __future__ import annotations

import pytest
from helpers import make_edge, make_node

from flowcore.core.graph_schema import NodeType, WorkflowDocument
from flowcore.core.models import ExecutionStatus
from flowcore.core.runtime import (
    ExecutorServices,
    InMemoryStepRunner,
    NonRetriableError,
    StatusChannel,
    WorkflowRunner,
)
from flowcore.executors import InMemoryRecordStore, default_registry
from flowcore.executors.builtin import OPERATORS


async def _run(document, services=None, **kwargs):
    runner = WorkflowRunner(default_registry(), services=services)
    return await runner.execute(document, **kwargs)


def _single(node, trigger_type=NodeType.MANUAL_TRIGGER, name="Main"):
    """Trigger publishing ``lead`` followed by ``node``."""
    return WorkflowDocument(
        id="wf-main",
        name=name,
        nodes=[make_node("trigger", trigger_type, variableName="lead"), node],
        edges=[make_edge("trigger", node.id)],
    )


LEAD = {"name": "Ada", "email": "ada@example.com", "amount": "250"}


# =============================================================================
# Control Flow Executors
# =============================================================================


class TestBuiltins:
    @pytest.mark.asyncio
    async def test_trigger_without_variable_name_adds_nothing(self):
        doc = WorkflowDocument(
            id="wf", name="T", nodes=[make_node("t", NodeType.MANUAL_TRIGGER)]
        )

        result = await _run(doc, trigger_data={"x": 1})

        assert result.context == {}
        assert result.statuses["t"] == ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_set_variable_typed_values(self):
        doc = _single(make_node("set", variableName="payload", value='{"to": "{{lead.email}}"}'))

        result = await _run(doc, trigger_data=LEAD)

        assert result.context["payload"] == {"to": "ada@example.com"}

    @pytest.mark.asyncio
    async def test_set_variable_requires_variable_name(self):
        with pytest.raises(NonRetriableError, match="No variable name"):
            await _run(_single(make_node("set", value="x")), trigger_data=LEAD)

    @pytest.mark.parametrize(
        "operator,left,right,expected",
        [
            ("equals", "a", "a", True),
            ("notEquals", "a", "b", True),
            ("greaterThan", "10", "9", True),
            ("greaterThan", "abc", "9", False),
            ("lessThan", "", "1", True),
            ("greaterThanOrEqual", "2.5", "2.5", True),
            ("lessThanOrEqual", "3", "2", False),
            ("contains", "hello world", "world", True),
            ("notContains", "hello", "x", True),
            ("startsWith", "hello", "he", True),
            ("endsWith", "hello", "lo", True),
            ("isEmpty", "   ", "", True),
            ("isNotEmpty", "x", "", True),
        ],
    )
    def test_if_else_operators(self, operator, left, right, expected):
        assert OPERATORS[operator](left, right) is expected

    @pytest.mark.asyncio
    async def test_if_else_output(self):
        node = make_node(
            "check",
            NodeType.IF_ELSE,
            variableName="isBig",
            leftOperand="{{lead.amount}}",
            operator="greaterThan",
            rightOperand="100",
        )

        result = await _run(_single(node), trigger_data=LEAD)

        assert result.context["isBig"] == {
            "result": True,
            "leftValue": "250",
            "rightValue": "100",
            "operator": "greaterThan",
            "branchToFollow": "true",
        }

    @pytest.mark.asyncio
    async def test_if_else_missing_variable_is_empty(self):
        node = make_node(
            "check",
            NodeType.IF_ELSE,
            variableName="noPhone",
            leftOperand="{{lead.phone}}{{unknown.field}}",
            operator="isEmpty",
        )

        result = await _run(_single(node), trigger_data=LEAD)

        assert result.context["noPhone"]["result"] is True
        assert result.context["noPhone"]["branchToFollow"] == "true"


# =============================================================================
# CRM Executors
# =============================================================================


class TestContacts:
    def _create(self, **data):
        return make_node("contact", NodeType.CREATE_CONTACT, variableName="contact", **data)

    @pytest.mark.asyncio
    async def test_create_contact(self, services, record_store):
        node = self._create(name="{{lead.name}}", email="{{lead.email}}", city="")

        result = await _run(_single(node), services=services, trigger_data=LEAD)

        contact = result.context["contact"]
        assert contact["name"] == "Ada"
        assert contact["email"] == "ada@example.com"
        assert contact["type"] == "LEAD"
        assert contact["city"] is None
        stored = record_store.records["contact"][contact["id"]]
        assert stored["organizationId"] == "org-1"
        assert stored["score"] == 0

    @pytest.mark.asyncio
    async def test_name_required(self, services, record_store):
        channel = StatusChannel()

        with pytest.raises(NonRetriableError, match="Name is required"):
            await _run(
                _single(self._create(email="x@y.z")), services=services, channel=channel
            )

        assert channel.status_of("contact") == ExecutionStatus.ERROR
        assert record_store.calls == []

    @pytest.mark.asyncio
    async def test_unresolved_variable_is_fatal(self, services):
        node = self._create(name="{{lead.name}}", phone="{{crm.phone}}")

        with pytest.raises(NonRetriableError, match="crm"):
            await _run(_single(node), services=services, trigger_data=LEAD)

    @pytest.mark.asyncio
    async def test_workflow_without_organization(self):
        store = InMemoryRecordStore(scopes={"wf-main": None})
        node = self._create(name="Ada")

        with pytest.raises(NonRetriableError, match="organization context"):
            await _run(_single(node), services=ExecutorServices(record_store=store))

    @pytest.mark.asyncio
    async def test_missing_record_store(self):
        with pytest.raises(NonRetriableError, match="no record store"):
            await _run(_single(self._create(name="Ada")))

    @pytest.mark.asyncio
    async def test_retry_does_not_create_twice(self, services, record_store):
        doc = _single(self._create(name="{{lead.name}}"))
        steps = InMemoryStepRunner()

        first = await _run(doc, services=services, trigger_data=LEAD, step_runner=steps)
        second = await _run(doc, services=services, trigger_data=LEAD, step_runner=steps)

        assert first.context["contact"]["id"] == second.context["contact"]["id"]
        assert record_store.calls == [("create", "contact")]

    @pytest.mark.asyncio
    async def test_update_only_provided_fields(self, services, record_store):
        scope = record_store.get_workflow_scope("wf-main")
        existing = record_store.create("contact", scope, {"name": "Ada", "phone": "123"})
        node = make_node(
            "update",
            NodeType.UPDATE_CONTACT,
            variableName="updated",
            contactId=existing["id"],
            email="{{lead.email}}",
            lifecycleStage="CUSTOMER",
        )

        result = await _run(_single(node), services=services, trigger_data=LEAD)

        updated = result.context["updated"]
        assert updated["email"] == "ada@example.com"
        assert updated["lifecycleStage"] == "CUSTOMER"
        assert updated["name"] == "Ada"
        assert record_store.records["contact"][existing["id"]]["phone"] == "123"
        assert "updatedAt" in updated

    @pytest.mark.asyncio
    async def test_update_unknown_contact(self, services):
        node = make_node(
            "update", NodeType.UPDATE_CONTACT, variableName="updated", contactId="nope"
        )

        with pytest.raises(NonRetriableError, match="No contact with id 'nope'"):
            await _run(_single(node), services=services)

    @pytest.mark.asyncio
    async def test_update_requires_contact_id(self, services):
        node = make_node("update", NodeType.UPDATE_CONTACT, variableName="updated")

        with pytest.raises(NonRetriableError, match="Contact ID is required"):
            await _run(_single(node), services=services)


class TestDeals:
    @pytest.mark.asyncio
    async def test_create_deal(self, services):
        node = make_node(
            "deal",
            NodeType.CREATE_DEAL,
            variableName="deal",
            name="Deal for {{lead.name}}",
            value="{{lead.amount}}",
            deadline="2025-03-01T00:00:00+00:00",
            contactIds="c-1, c-2,",
        )

        result = await _run(_single(node), services=services, trigger_data=LEAD)

        deal = result.context["deal"]
        assert deal["name"] == "Deal for Ada"
        assert deal["value"] == "250"
        assert deal["currency"] == "USD"
        assert deal["deadline"] == "2025-03-01T00:00:00+00:00"
        assert deal["contactIds"] == ["c-1", "c-2"]

    @pytest.mark.asyncio
    async def test_invalid_amount(self, services):
        node = make_node("deal", NodeType.CREATE_DEAL, variableName="deal", name="D", value="lots")

        with pytest.raises(NonRetriableError, match="not a number"):
            await _run(_single(node), services=services)

    @pytest.mark.asyncio
    async def test_create_deal_requires_variable_name(self, services):
        node = make_node("deal", NodeType.CREATE_DEAL, name="D")

        with pytest.raises(NonRetriableError, match="No variable name"):
            await _run(_single(node), services=services)

    @pytest.mark.asyncio
    async def test_update_deal(self, services, record_store):
        scope = record_store.get_workflow_scope("wf-main")
        existing = record_store.create("deal", scope, {"name": "Old", "value": 10.0})
        node = make_node(
            "deal",
            NodeType.UPDATE_DEAL,
            variableName="deal",
            dealId=existing["id"],
            value="99.5",
        )

        result = await _run(_single(node), services=services)

        assert result.context["deal"]["value"] == "99.5"
        assert result.context["deal"]["name"] == "Old"


# =============================================================================
# Bundle Executor
# =============================================================================


class TestBundle:
    def _parent(self, **data):
        node = make_node(
            "enrich",
            NodeType.BUNDLE_WORKFLOW,
            variableName="labels",
            bundleWorkflowId="bundle-label",
            **data,
        )
        return _single(node)

    def _services(self, *documents):
        by_id = {doc.id: doc for doc in documents}
        return ExecutorServices(workflow_loader=by_id.get)

    @pytest.mark.asyncio
    async def test_inputs_defaults_and_outputs(self, bundle_workflow):
        doc = self._parent(inputMappings=[{"bundleInputName": "customer", "value": "{{lead.name}}"}])
        channel = StatusChannel()

        result = await _run(
            doc, services=self._services(bundle_workflow), trigger_data=LEAD, channel=channel
        )

        assert result.context["labels"] == {"label": "VIP: Ada"}
        assert channel.status_of("enrich") == ExecutionStatus.SUCCESS
        assert channel.status_of("enrich/make-label") == ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_parent_context_and_whole_result(self, bundle_workflow):
        bundle = bundle_workflow.model_copy(
            update={
                "bundle_outputs": None,
                "nodes": [
                    bundle_workflow.nodes[0],
                    make_node("make-label", variableName="label", value="{{Main.lead.email}}"),
                ],
            }
        )

        result = await _run(self._parent(), services=self._services(bundle), trigger_data=LEAD)

        whole = result.context["labels"]["result"]
        assert whole["label"] == "ada@example.com"
        assert whole["prefix"] == "VIP"
        assert whole["parentContext"]["Main"]["lead"] == LEAD

    @pytest.mark.asyncio
    async def test_missing_bundle(self):
        with pytest.raises(NonRetriableError, match="not found"):
            await _run(self._parent(), services=self._services())

    @pytest.mark.asyncio
    async def test_not_a_bundle(self, bundle_workflow):
        plain = bundle_workflow.model_copy(update={"is_bundle": False})

        with pytest.raises(NonRetriableError, match="is not a bundle workflow"):
            await _run(self._parent(), services=self._services(plain))

    @pytest.mark.asyncio
    async def test_nested_failure_fails_bundle_node(self, bundle_workflow):
        doc = self._parent(inputMappings=[{"bundleInputName": "customer", "value": "{{crm.x}}"}])
        channel = StatusChannel()

        with pytest.raises(NonRetriableError):
            await _run(
                doc, services=self._services(bundle_workflow), trigger_data=LEAD, channel=channel
            )

        assert channel.status_of("enrich") == ExecutionStatus.ERROR

    @pytest.mark.asyncio
    async def test_bundle_calling_own_workflow(self):
        node = make_node(
            "again", NodeType.BUNDLE_WORKFLOW, variableName="again", bundleWorkflowId="wf-main"
        )

        with pytest.raises(NonRetriableError, match="invokes itself"):
            await _run(_single(node), services=self._services())

    @pytest.mark.asyncio
    async def test_recursive_bundle_rejected(self, bundle_workflow):
        recursive = bundle_workflow.model_copy(
            update={
                "nodes": [
                    bundle_workflow.nodes[0],
                    make_node(
                        "make-label",
                        NodeType.BUNDLE_WORKFLOW,
                        variableName="label",
                        bundleWorkflowId="bundle-label",
                    ),
                ],
            }
        )
        channel = StatusChannel()

        with pytest.raises(NonRetriableError, match="bundle-label invokes itself"):
            await _run(
                self._parent(),
                services=self._services(recursive),
                trigger_data=LEAD,
                channel=channel,
            )

        assert channel.status_of("enrich/make-label") == ExecutionStatus.ERROR
        assert channel.status_of("enrich") == ExecutionStatus.ERROR
