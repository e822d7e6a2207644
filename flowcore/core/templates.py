"""Template engine for node configuration strings.

Configuration values may embed ``{{namespace.path}}`` tokens that refer to
variables published by upstream nodes. Resolution runs in two passes:

1. Literal substitution: every token that is a plain dotted path is looked up
   in the context and replaced by its string form. Tokens whose root variable
   does not exist are left verbatim so the caller can decide whether the
   missing binding is fatal (see find_unresolved). Names bound by the
   template itself (``{% for item in ... %}``, ``{% set x = ... %}``) are
   never substituted here.
2. Logic pass: whatever template syntax remains (``{% if %}``, ``{% for %}``,
   filters such as ``{{ form | json }}``) is compiled by a sandboxed Jinja2
   environment. Any template error falls back to the pass-1 string.

Only the template text is ever compiled. Substituted values reach the logic
pass as opaque variables, so a form answer containing ``{{ ... }}`` or
``{% ... %}`` is output as typed and never evaluated.

Context lookups check a legacy nested ``variables`` mapping before the
context root; executors in this package always publish at the root.
"""

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{(.+?)\}\}")

# Dotted path: identifier root followed by keys or list indices
PATH_PATTERN = re.compile(r"^[A-Za-z_$][\w$]*(?:\.[\w$-]+)*$")

# Handlebars-style helper call: {{json form.responses}}
JSON_HELPER_PATTERN = re.compile(r"^json\s+([A-Za-z_$][\w$]*(?:\.[\w$-]+)*)$")

LEGACY_VARIABLES_KEY = "variables"

# Names a template binds itself; pass 1 leaves their tokens to Jinja
_FOR_TARGETS = re.compile(r"\{%-?\s*for\s+([\w\s,]+?)\s+in\s")
_SET_TARGETS = re.compile(r"\{%-?\s*set\s+([\w\s,]+?)\s*=")

# Stands in for a pass-1 value during the logic pass
_PLACEHOLDER = "_flowcore_value_"
_PLACEHOLDER_PATTERN = re.compile(r"\{\{ (" + _PLACEHOLDER + r"\d+) \}\}")


class _Missing:
    """Sentinel for a path whose root variable is not in the context."""

    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


def _json_helper(value: Any) -> str:
    """Pretty-print a value as JSON (the ``json`` helper)."""
    return json.dumps(value, indent=2, default=str, ensure_ascii=False)


# SECURITY: SandboxedEnvironment blocks attribute access to Python internals.
# StrictUndefined makes unresolved names fail the logic pass instead of
# silently rendering as empty strings.
_ENV = SandboxedEnvironment(
    undefined=StrictUndefined,
    autoescape=False,  # Plain text (emails, CRM fields), not HTML
    keep_trailing_newline=True,
)
_ENV.filters["json"] = _json_helper
_ENV.globals["json"] = _json_helper


def get_path(obj: Any, path: str) -> Any:
    """Walk a dotted path through mappings and lists.

    Returns MISSING as soon as a segment cannot be followed.
    """
    current = obj
    for key in path.split("."):
        if isinstance(current, Mapping):
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def lookup(context: Mapping[str, Any], path: str) -> Any:
    """Evaluate a dotted path against a context.

    Returns MISSING when the root variable exists in no scope, and None when
    the root exists but a nested field is absent (optional fields are not errors).
    """
    scopes: list[Mapping[str, Any]] = []
    legacy = context.get(LEGACY_VARIABLES_KEY)
    if isinstance(legacy, Mapping):
        scopes.append(legacy)
    scopes.append(context)

    root = path.split(".", 1)[0]
    root_found = False
    for scope in scopes:
        if root not in scope:
            continue
        root_found = True
        value = get_path(scope, path)
        if value is not MISSING:
            return value
    return None if root_found else MISSING


def stringify(value: Any) -> str:
    """String form used when a value is interpolated into text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


def bound_names(template: str) -> set[str]:
    """Variable names introduced by ``{% for %}`` and ``{% set %}`` tags."""
    names: set[str] = set()
    for pattern in (_FOR_TARGETS, _SET_TARGETS):
        for match in pattern.finditer(template):
            names.update(n.strip() for n in match.group(1).split(",") if n.strip())
    return names


def _substitute(expr: str, context: Mapping[str, Any], bound: set[str]) -> str | None:
    """Pass-1 text for one token, or None to leave the token for the logic pass."""
    helper = JSON_HELPER_PATTERN.match(expr)
    path = helper.group(1) if helper else expr
    if not PATH_PATTERN.match(path) or path.split(".", 1)[0] in bound:
        return None

    value = lookup(context, path)
    if value is MISSING:
        return None
    return _json_helper(value) if helper else stringify(value)


def _render_context(context: Mapping[str, Any]) -> dict[str, Any]:
    legacy = context.get(LEGACY_VARIABLES_KEY)
    if isinstance(legacy, Mapping):
        return {**context, **legacy}
    return dict(context)


def resolve(template: str, context: Mapping[str, Any]) -> str:
    """Resolve every ``{{...}}`` expression in ``template`` against ``context``."""
    if "{{" not in template and "{%" not in template:
        return template

    bound = bound_names(template)
    values: dict[str, str] = {}

    def stage(match: re.Match) -> str:
        text = _substitute(match.group(1).strip(), context, bound)
        if text is None:
            return match.group(0)
        key = f"{_PLACEHOLDER}{len(values)}"
        values[key] = text
        return "{{ " + key + " }}"

    staged = TOKEN_PATTERN.sub(stage, template)
    substituted = _PLACEHOLDER_PATTERN.sub(lambda m: values[m.group(1)], staged)
    remainder = _PLACEHOLDER_PATTERN.sub("", staged)
    if "{{" not in remainder and "{%" not in remainder:
        return substituted

    try:
        return _ENV.from_string(staged).render({**_render_context(context), **values})
    except TemplateError as e:
        # Unresolved markers and non-Jinja syntax end up here; keep pass-1 output
        logger.debug(f"Logic pass skipped for template: {e}")
        return substituted


def find_unresolved(template: str, context: Mapping[str, Any]) -> list[str]:
    """Root variable names referenced by ``template`` that the context lacks."""
    bound = bound_names(template)
    missing: list[str] = []
    for match in TOKEN_PATTERN.finditer(template):
        expr = match.group(1).strip()
        helper = JSON_HELPER_PATTERN.match(expr)
        path = helper.group(1) if helper else expr
        if not PATH_PATTERN.match(path):
            continue
        root = path.split(".", 1)[0]
        if root in bound:
            continue
        if root not in missing and lookup(context, path) is MISSING:
            missing.append(root)
    return missing


_SINGLE_TOKEN = re.compile(r"^\{\{\s*([A-Za-z_$][\w$]*(?:\.[\w$-]+)*)\s*\}\}$")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


def resolve_value(template: str, context: Mapping[str, Any]) -> Any:
    """Resolve ``template`` and coerce the result into a typed value.

    A template made of exactly one path token yields the referenced value
    unchanged. Otherwise the resolved text is parsed as a JSON object/array,
    a number, or a boolean when it looks like one.
    """
    single = _SINGLE_TOKEN.match(template.strip())
    if single:
        value = lookup(context, single.group(1))
        if value is not MISSING:
            return value

    resolved = resolve(template, context)
    text = resolved.strip()
    if (text.startswith("{") and text.endswith("}")) or (
        text.startswith("[") and text.endswith("]")
    ):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return resolved
    if _NUMBER.match(text):
        return float(text) if "." in text else int(text)
    if text in ("true", "false"):
        return text == "true"
    return resolved


def rename_variable(template: str, old_name: str, new_name: str) -> str:
    """Rewrite ``{{old_name...}}`` and ``{{json old_name...}}`` tokens.

    Only exact tokens are rewritten: the name must be followed by ``.``,
    whitespace, or the closing braces, so ``{{formData.a}}`` survives a
    rename of ``form``.
    """
    if old_name == new_name or not old_name:
        return template
    pattern = re.compile(r"\{\{\s*(json\s+)?" + re.escape(old_name) + r"(?=[.\s]|\}\})")
    return pattern.sub(lambda m: "{{" + (m.group(1) or "") + new_name, template)
