"""Bundle executor: runs a reusable sub-workflow inside the current run.

The bundle sees its declared inputs as top-level variables and the calling
workflow's context under the caller's workflow name (also collected under
``parentContext``). Nested nodes share the run's step store and status
channel, scoped under the bundle node.
"""

import logging
from typing import Any

from pydantic import ValidationError

from flowcore.core.graph_schema import BundleWorkflowConfig, WorkflowDocument
from flowcore.core.runtime import ExecutorInput, NonRetriableError, node_executor
from flowcore.core.templates import MISSING, lookup
from flowcore.executors.builtin import require_variable_name
from flowcore.executors.records import maybe_await

logger = logging.getLogger(__name__)

PARENT_CONTEXT_KEY = "parentContext"


async def _load_bundle(inp: ExecutorInput, bundle_id: str) -> WorkflowDocument:
    loader = inp.services.workflow_loader
    if loader is None:
        raise NonRetriableError("Bundle Workflow Node error: no workflow loader is configured.")

    async def load() -> WorkflowDocument:
        document = await maybe_await(loader(bundle_id))
        if document is None:
            raise NonRetriableError(f"Bundle workflow {bundle_id} not found")
        if not document.is_bundle:
            raise NonRetriableError(f"Workflow {bundle_id} is not a bundle workflow")
        return document

    # Pinned for the run: a retry executes the same bundle version
    raw = await inp.step.run("load-bundle-workflow", load)
    try:
        return WorkflowDocument.model_validate(raw)
    except ValidationError as e:
        raise NonRetriableError(f"Bundle workflow {bundle_id} is malformed: {e}") from e


def bundle_context(
    inp: ExecutorInput, config: BundleWorkflowConfig, document: WorkflowDocument
) -> dict[str, Any]:
    """Initial context of the sub-workflow."""
    inputs: dict[str, Any] = {}
    for mapping in config.input_mappings:
        inputs[mapping.bundle_input_name] = inp.resolve_value(
            f"Bundle input '{mapping.bundle_input_name}'", mapping.value
        )
    for declared in document.bundle_inputs:
        if declared.name not in inputs and declared.default_value is not None:
            inputs[declared.name] = declared.default_value

    parent_name = inp.workflow.workflow_name
    parent_variables = dict(inp.context)
    return {
        **inputs,
        parent_name: parent_variables,
        PARENT_CONTEXT_KEY: {parent_name: parent_variables},
    }


def collect_outputs(document: WorkflowDocument, final_context: dict[str, Any]) -> dict[str, Any]:
    """Declared outputs read from the final bundle context; the whole context if none."""
    if document.bundle_outputs is None:
        return {"result": final_context}

    outputs: dict[str, Any] = {}
    for output in document.bundle_outputs:
        value = lookup(final_context, output.variable_path)
        outputs[output.name] = None if value is MISSING else value
    return outputs


@node_executor
async def bundle_workflow_executor(inp: ExecutorInput) -> dict[str, Any]:
    config = inp.config_as(BundleWorkflowConfig)
    require_variable_name(inp, "Bundle Workflow")
    if not config.bundle_workflow_id:
        raise NonRetriableError("Bundle Workflow Node error: No bundle workflow selected.")
    if config.bundle_workflow_id in (inp.workflow.workflow_id, *inp.bundle_stack):
        raise NonRetriableError(f"Bundle workflow {config.bundle_workflow_id} invokes itself")

    document = await _load_bundle(inp, config.bundle_workflow_id)
    initial = bundle_context(inp, config, document)

    logger.info(f"Running bundle '{document.name}' for node {inp.node_id}")
    final_context = await inp.runner.execute_nested(document, inp, initial)
    return collect_outputs(document, final_context)
