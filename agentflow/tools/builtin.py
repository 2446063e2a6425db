"""Small text and data tools registered with every service instance."""

import json
from typing import Any, Dict, List

from ..core.logging import get_logger

logger = get_logger(__name__)


def echo(message: str = "", **kwargs) -> Dict[str, Any]:
    """Return the message unchanged, useful for wiring and debugging templates."""
    logger.debug(f"echo tool called with message: {message}")
    return {"message": message, **kwargs}


def word_count(text: str = "", **kwargs) -> Dict[str, Any]:
    """
    Count words, lines and characters of a text.

    Args:
        text: Text to measure, usually a prior step output
        **kwargs: Ignored extra parameters

    Returns:
        Dictionary with the counts
    """
    return {
        "words": len(text.split()),
        "lines": len(text.splitlines()) if text else 0,
        "characters": len(text),
    }


def extract_field(data: Any = None, path: str = "", default: Any = None, **kwargs) -> Any:
    """
    Pull a value out of a JSON document by dotted path.

    ``data`` may be a mapping or a JSON string, which is how structured step
    outputs arrive after placeholder substitution. List items are addressed
    by index (``items.0.name``).
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            raise ValueError("data is not valid JSON")

    current = data
    for part in [p for p in path.split(".") if p]:
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return default
    return current


def simple_math(operation: str = "add", a: Any = 0, b: Any = 0, **kwargs) -> Dict[str, Any]:
    """Basic arithmetic on two operands; string operands are parsed as numbers."""
    left, right = float(a), float(b)

    if operation == "add":
        value = left + right
    elif operation == "subtract":
        value = left - right
    elif operation == "multiply":
        value = left * right
    elif operation == "divide":
        if right == 0:
            logger.error("Division by zero attempted")
            raise ValueError("Cannot divide by zero")
        value = left / right
    else:
        raise ValueError(f"Unknown operation: {operation}")

    return {"result": value, "operation": operation}


DEFAULT_TOOLS: List[tuple] = [
    ("echo", echo, "Return the given message"),
    ("word_count", word_count, "Count words, lines and characters of a text"),
    ("extract_field", extract_field, "Extract a value from JSON data by dotted path"),
    ("simple_math", simple_math, "Add, subtract, multiply or divide two numbers"),
]
