"""CRM record executors: create/update contacts and deals.

Every text field may hold templates. The owning organization is read once per
run through the ``get-workflow-context`` step; the write itself is a second
durable step so a retried run never creates the same record twice.
"""

from datetime import datetime
from typing import Any

from pydantic.alias_generators import to_camel

from flowcore.core.graph_schema import ContactConfig, DealConfig
from flowcore.core.runtime import ExecutorInput, NonRetriableError, node_executor
from flowcore.executors.builtin import require_variable_name
from flowcore.executors.records import RecordNotFoundError, RecordStore, maybe_await

CONTACT_TEXT_FIELDS = (
    "email",
    "company_name",
    "phone",
    "position",
    "source",
    "website",
    "linkedin",
    "country",
    "city",
    "notes",
)

CONTACT_CREATE_OUTPUT = (
    "id",
    "name",
    "email",
    "companyName",
    "phone",
    "position",
    "type",
    "lifecycleStage",
    "source",
    "website",
    "linkedin",
    "country",
    "city",
    "createdAt",
)

CONTACT_UPDATE_OUTPUT = (
    "id",
    "name",
    "email",
    "companyName",
    "phone",
    "type",
    "lifecycleStage",
    "updatedAt",
)

DEAL_TEXT_FIELDS = ("source", "description", "pipeline_id", "pipeline_stage_id")

DEFAULT_CONTACT_TYPE = "LEAD"
DEFAULT_CURRENCY = "USD"


def _record_store(inp: ExecutorInput, label: str) -> RecordStore:
    store = inp.services.record_store
    if store is None:
        raise NonRetriableError(f"{label} Node error: no record store is configured.")
    return store


async def _workflow_scope(inp: ExecutorInput, label: str, store: RecordStore) -> dict[str, Any]:
    async def fetch() -> dict[str, Any]:
        scope = await maybe_await(store.get_workflow_scope(inp.workflow.workflow_id))
        if not scope or not scope.get("organizationId"):
            raise NonRetriableError(
                f"{label} Node error: This workflow must be in an organization context."
            )
        return scope

    return await inp.step.run("get-workflow-context", fetch)


def _pick(record: dict[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    return {key: record.get(key) for key in keys}


def _format_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _parse_amount(label: str, text: str | None) -> float | None:
    if text is None:
        return None
    try:
        return float(text)
    except ValueError:
        raise NonRetriableError(f"{label} Node error: value '{text}' is not a number.") from None


def _parse_deadline(label: str, text: str | None) -> str | None:
    if text is None:
        return None
    try:
        return datetime.fromisoformat(text).isoformat()
    except ValueError:
        raise NonRetriableError(f"{label} Node error: deadline '{text}' is not a date.") from None


def _split_ids(text: str | None) -> list[str]:
    if not text:
        return []
    return [part.strip() for part in text.split(",") if part.strip()]


# ========== Contacts ==========


@node_executor
async def create_contact_executor(inp: ExecutorInput) -> dict[str, Any]:
    label = "Create Contact"
    config = inp.config_as(ContactConfig)
    if not config.name:
        raise NonRetriableError(f"{label} Node error: Name is required.")

    store = _record_store(inp, label)
    scope = await _workflow_scope(inp, label, store)

    values: dict[str, Any] = {
        "name": inp.require(f"{label}: name", config.name),
        "type": config.contact_type or DEFAULT_CONTACT_TYPE,
        "lifecycleStage": config.lifecycle_stage or None,
        "score": 0,
        "tags": [],
    }
    for attr in CONTACT_TEXT_FIELDS:
        values[to_camel(attr)] = inp.resolve(f"{label}: {attr}", getattr(config, attr))

    contact = await inp.step.run(
        "create-contact", lambda: maybe_await(store.create("contact", scope, values))
    )
    return _pick(contact, CONTACT_CREATE_OUTPUT)


@node_executor
async def update_contact_executor(inp: ExecutorInput) -> dict[str, Any]:
    label = "Update Contact"
    config = inp.config_as(ContactConfig)
    require_variable_name(inp, label)
    if not config.contact_id:
        raise NonRetriableError(f"{label} Node error: Contact ID is required.")

    store = _record_store(inp, label)
    scope = await _workflow_scope(inp, label, store)
    contact_id = inp.require(f"{label}: contact ID", config.contact_id)

    # Only fields present in the node configuration are written; blank clears
    provided = config.model_fields_set
    values: dict[str, Any] = {}
    if "name" in provided and config.name:
        values["name"] = inp.require(f"{label}: name", config.name)
    for attr in CONTACT_TEXT_FIELDS:
        if attr in provided:
            values[to_camel(attr)] = inp.resolve(f"{label}: {attr}", getattr(config, attr))
    if config.contact_type:
        values["type"] = config.contact_type
    if "lifecycle_stage" in provided:
        values["lifecycleStage"] = config.lifecycle_stage or None

    async def write() -> dict[str, Any]:
        try:
            return await maybe_await(store.update("contact", scope, contact_id, values))
        except RecordNotFoundError as e:
            raise NonRetriableError(f"{label} Node error: {e}") from e

    contact = await inp.step.run("update-contact", write)
    return _pick(contact, CONTACT_UPDATE_OUTPUT)


# ========== Deals ==========


def _deal_output(deal: dict[str, Any], timestamp_key: str) -> dict[str, Any]:
    output = {
        "id": deal.get("id"),
        "name": deal.get("name"),
        "value": _format_value(deal.get("value")),
        "currency": deal.get("currency"),
        "deadline": deal.get("deadline"),
        "source": deal.get("source"),
        "description": deal.get("description"),
    }
    if timestamp_key == "createdAt":
        output["pipelineId"] = deal.get("pipelineId")
        output["pipelineStageId"] = deal.get("pipelineStageId")
        output["contactIds"] = deal.get("contactIds", [])
    output[timestamp_key] = deal.get(timestamp_key)
    return output


@node_executor
async def create_deal_executor(inp: ExecutorInput) -> dict[str, Any]:
    label = "Create Deal"
    config = inp.config_as(DealConfig)
    require_variable_name(inp, label)
    if not config.name:
        raise NonRetriableError(f"{label} Node error: Name is required.")

    store = _record_store(inp, label)
    scope = await _workflow_scope(inp, label, store)

    values: dict[str, Any] = {
        "name": inp.require(f"{label}: name", config.name),
        "value": _parse_amount(label, inp.resolve(f"{label}: value", config.value)),
        "currency": inp.resolve(f"{label}: currency", config.currency) or DEFAULT_CURRENCY,
        "deadline": _parse_deadline(label, inp.resolve(f"{label}: deadline", config.deadline)),
        "contactIds": _split_ids(inp.resolve(f"{label}: contact IDs", config.contact_ids)),
        "tags": [],
    }
    for attr in DEAL_TEXT_FIELDS:
        values[to_camel(attr)] = inp.resolve(f"{label}: {attr}", getattr(config, attr))

    deal = await inp.step.run(
        "create-deal", lambda: maybe_await(store.create("deal", scope, values))
    )
    return _deal_output(deal, "createdAt")


@node_executor
async def update_deal_executor(inp: ExecutorInput) -> dict[str, Any]:
    label = "Update Deal"
    config = inp.config_as(DealConfig)
    require_variable_name(inp, label)
    if not config.deal_id:
        raise NonRetriableError(f"{label} Node error: Deal ID is required.")

    store = _record_store(inp, label)
    scope = await _workflow_scope(inp, label, store)
    deal_id = inp.require(f"{label}: deal ID", config.deal_id)

    provided = config.model_fields_set
    values: dict[str, Any] = {}
    if "name" in provided and config.name:
        values["name"] = inp.require(f"{label}: name", config.name)
    if "value" in provided:
        values["value"] = _parse_amount(label, inp.resolve(f"{label}: value", config.value))
    if "currency" in provided and config.currency:
        values["currency"] = inp.resolve(f"{label}: currency", config.currency)
    if "deadline" in provided:
        values["deadline"] = _parse_deadline(
            label, inp.resolve(f"{label}: deadline", config.deadline)
        )
    for attr in DEAL_TEXT_FIELDS:
        if attr in provided:
            values[to_camel(attr)] = inp.resolve(f"{label}: {attr}", getattr(config, attr))

    async def write() -> dict[str, Any]:
        try:
            return await maybe_await(store.update("deal", scope, deal_id, values))
        except RecordNotFoundError as e:
            raise NonRetriableError(f"{label} Node error: {e}") from e

    deal = await inp.step.run("update-deal", write)
    return _deal_output(deal, "updatedAt")
