"""Built-in executors: triggers and control flow."""

import logging
from collections.abc import Callable
from typing import Any

from flowcore.core.graph_schema import IfElseConfig, SetVariableConfig, StopWorkflowConfig
from flowcore.core.runtime import (
    ExecutorInput,
    NonRetriableError,
    WorkflowStopped,
    node_executor,
)
from flowcore.core.templates import PATH_PATTERN, TOKEN_PATTERN, resolve

logger = logging.getLogger(__name__)


def require_variable_name(inp: ExecutorInput, label: str) -> str:
    if not inp.variable_name:
        raise NonRetriableError(f"{label} Node error: No variable name has been set.")
    return inp.variable_name


@node_executor
async def trigger_executor(inp: ExecutorInput) -> dict[str, Any]:
    """Publish the trigger payload (webhook body, form response, ...)."""
    return dict(inp.trigger_data or {})


@node_executor
async def set_variable_executor(inp: ExecutorInput) -> Any:
    config = inp.config_as(SetVariableConfig)
    require_variable_name(inp, "Set Variable")
    return inp.resolve_value("Set Variable: value", config.value)


# --- IF_ELSE ---


def _as_number(text: str) -> float | None:
    # Blank compares as zero, anything unparsable never compares true
    if not text.strip():
        return 0.0
    try:
        return float(text)
    except ValueError:
        return None


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[str, str], bool]:
    def check(left: str, right: str) -> bool:
        a, b = _as_number(left), _as_number(right)
        return a is not None and b is not None and compare(a, b)

    return check


OPERATORS: dict[str, Callable[[str, str], bool]] = {
    "equals": lambda left, right: left == right,
    "notEquals": lambda left, right: left != right,
    "greaterThan": _numeric(lambda a, b: a > b),
    "lessThan": _numeric(lambda a, b: a < b),
    "greaterThanOrEqual": _numeric(lambda a, b: a >= b),
    "lessThanOrEqual": _numeric(lambda a, b: a <= b),
    "contains": lambda left, right: right in left,
    "notContains": lambda left, right: right not in left,
    "startsWith": lambda left, right: left.startswith(right),
    "endsWith": lambda left, right: left.endswith(right),
    "isEmpty": lambda left, _: not left.strip(),
    "isNotEmpty": lambda left, _: bool(left.strip()),
}


def _operand(template: str, inp: ExecutorInput) -> str:
    """Resolve an operand; variables that do not exist compare as empty."""
    resolved = resolve(template, inp.context)
    return TOKEN_PATTERN.sub(
        lambda m: "" if PATH_PATTERN.match(m.group(1).strip()) else m.group(0), resolved
    )


@node_executor
async def if_else_executor(inp: ExecutorInput) -> dict[str, Any]:
    """Evaluate the condition; ``branchToFollow`` selects the outgoing edges."""
    config = inp.config_as(IfElseConfig)
    require_variable_name(inp, "If/Else")

    left = _operand(config.left_operand, inp)
    right = _operand(config.right_operand, inp)
    result = OPERATORS[config.operator](left, right)
    logger.debug(f"If/Else {inp.node_id}: {left!r} {config.operator} {right!r} -> {result}")

    return {
        "result": result,
        "leftValue": left,
        "rightValue": right,
        "operator": config.operator,
        "branchToFollow": "true" if result else "false",
    }


@node_executor
async def stop_workflow_executor(inp: ExecutorInput) -> None:
    config = inp.config_as(StopWorkflowConfig)
    reason = resolve(config.reason, inp.context) if config.reason else None
    logger.info(f"Workflow stopped by node {inp.node_id}: {reason or 'no reason given'}")
    raise WorkflowStopped(reason, output={"stopped": True, "reason": reason})
