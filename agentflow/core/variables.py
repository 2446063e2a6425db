"""Placeholder substitution between workflow inputs and step outputs."""

import json
import re
from typing import Any, Dict, Mapping, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]*?[^{}\s])\s*\}\}")
STEP_OUTPUT_PATTERN = re.compile(r"^step_(\d+)_output$")


def stringify(value: Any) -> str:
    """Render a value the way it appears inside a resolved string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def _outputs_by_position(prior_outputs: Mapping[str, Any],
                         step_positions: Mapping[str, int]) -> Dict[int, Any]:
    return {
        step_positions[step_id]: output
        for step_id, output in prior_outputs.items()
        if step_id in step_positions
    }


def resolve(text: str,
            inputs: Mapping[str, Any],
            prior_outputs: Mapping[str, Any],
            step_positions: Optional[Mapping[str, int]] = None) -> str:
    """
    Substitute ``{{name}}`` and ``{{step_N_output}}`` placeholders.

    Inputs win over step outputs when both match a name. Placeholders that
    match nothing are left untouched, so the function never raises.

    Args:
        text: String possibly containing placeholders
        inputs: Workflow input variables
        prior_outputs: Outputs of already executed steps keyed by step id
        step_positions: 1-based template position of each step id

    Returns:
        The resolved string
    """
    if not isinstance(text, str) or "{{" not in text:
        return text

    by_position = _outputs_by_position(prior_outputs, step_positions or {})

    def substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in inputs:
            return stringify(inputs[name])
        step_match = STEP_OUTPUT_PATTERN.match(name)
        if step_match:
            position = int(step_match.group(1))
            if position in by_position:
                return stringify(by_position[position])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(substitute, text)


def resolve_params(params: Any,
                   inputs: Mapping[str, Any],
                   prior_outputs: Mapping[str, Any],
                   step_positions: Optional[Mapping[str, int]] = None) -> Any:
    """Resolve every string inside a parameter structure individually."""
    if isinstance(params, str):
        return resolve(params, inputs, prior_outputs, step_positions)
    if isinstance(params, dict):
        return {
            key: resolve_params(value, inputs, prior_outputs, step_positions)
            for key, value in params.items()
        }
    if isinstance(params, list):
        return [resolve_params(item, inputs, prior_outputs, step_positions) for item in params]
    return params


def build_variable_scope(inputs: Mapping[str, Any],
                         prior_outputs: Mapping[str, Any],
                         step_positions: Optional[Mapping[str, int]] = None) -> Dict[str, Any]:
    """Names visible to condition expressions."""
    scope: Dict[str, Any] = {}
    for position, output in _outputs_by_position(prior_outputs, step_positions or {}).items():
        scope[f"step_{position}_output"] = output
    scope.update(inputs)
    return scope
