"""Record store collaborator for CRM executors.

Entity persistence is opaque to the engine: executors only call
``get_workflow_scope``, ``create`` and ``update``. Implementations may be sync
or async; results must be JSON-serializable mappings.
"""

import inspect
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol


class RecordNotFoundError(LookupError):
    """Update target does not exist in the caller's scope."""

    pass


class RecordStore(Protocol):
    def get_workflow_scope(self, workflow_id: str) -> dict[str, Any] | None:
        """Owning ``organizationId``/``subaccountId`` of a workflow, None if unknown."""
        ...

    def create(self, kind: str, scope: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
        ...

    def update(
        self, kind: str, scope: dict[str, Any], record_id: str, values: dict[str, Any]
    ) -> dict[str, Any]:
        ...


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryRecordStore:
    """Dict-backed store for local runs and tests.

    Every workflow belongs to the same organization unless ``scopes`` maps
    workflow ids explicitly (a None entry marks a workflow with no owner).
    """

    def __init__(
        self,
        organization_id: str = "local-org",
        subaccount_id: str | None = None,
        scopes: dict[str, dict[str, Any] | None] | None = None,
    ):
        self.default_scope = {"organizationId": organization_id, "subaccountId": subaccount_id}
        self.scopes = dict(scopes or {})
        self.records: dict[str, dict[str, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []

    def get_workflow_scope(self, workflow_id: str) -> dict[str, Any] | None:
        if workflow_id in self.scopes:
            return self.scopes[workflow_id]
        return dict(self.default_scope)

    def create(self, kind: str, scope: dict[str, Any], values: dict[str, Any]) -> dict[str, Any]:
        record = {
            **values,
            "id": str(uuid.uuid4()),
            "organizationId": scope.get("organizationId"),
            "subaccountId": scope.get("subaccountId"),
            "createdAt": _now(),
        }
        self.records.setdefault(kind, {})[record["id"]] = record
        self.calls.append(("create", kind))
        return dict(record)

    def update(
        self, kind: str, scope: dict[str, Any], record_id: str, values: dict[str, Any]
    ) -> dict[str, Any]:
        record = self.records.get(kind, {}).get(record_id)
        if record is None or record.get("organizationId") != scope.get("organizationId"):
            raise RecordNotFoundError(f"No {kind} with id '{record_id}'")
        record.update(values)
        record["updatedAt"] = _now()
        self.calls.append(("update", kind))
        return dict(record)
