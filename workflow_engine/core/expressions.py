"""Safe evaluation of edge, condition and loop expressions.

Expressions are evaluated with simpleeval against the execution variables.
Every variable is available by name and also under ``variables``; dict
values support attribute access (``order.total``).
"""

import ast
from typing import Any, Dict, Optional

from simpleeval import EvalWithCompoundTypes

from .exceptions import WorkflowEngineError, ErrorCategory


SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
}

_CONSTANTS = {
    "true": True,
    "false": False,
    "none": None,
    "null": None,
}


class ExpressionError(WorkflowEngineError):
    """Raised when an expression cannot be parsed or evaluated."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)
        if expression is not None:
            self.add_context(expression=expression)


def check_syntax(expression: str) -> Optional[str]:
    """Return a syntax error message for ``expression``, or None when it parses."""
    if not isinstance(expression, str) or not expression.strip():
        return "expression must be a non-empty string"
    try:
        ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return f"invalid syntax in '{expression}': {e.msg}"
    return None


def evaluate(expression: str, variables: Dict[str, Any], extra_names: Optional[Dict[str, Any]] = None) -> Any:
    """Evaluate an expression against a variable snapshot.

    Args:
        expression: Expression source, e.g. ``amount > 100 and approved``
        variables: Execution variables (read only)
        extra_names: Additional names such as ``result`` or ``iteration``

    Returns:
        The expression value

    Raises:
        ExpressionError: If the expression is invalid or references unknown names
    """
    names: Dict[str, Any] = dict(_CONSTANTS)
    names.update(variables)
    names["variables"] = variables
    if extra_names:
        names.update(extra_names)

    evaluator = EvalWithCompoundTypes(names=names, functions=SAFE_FUNCTIONS)
    try:
        return evaluator.eval(expression.strip())
    except Exception as e:
        raise ExpressionError(
            f"Failed to evaluate '{expression}': {type(e).__name__}: {e}",
            expression=expression
        ) from e


def evaluate_bool(expression: str, variables: Dict[str, Any], extra_names: Optional[Dict[str, Any]] = None) -> bool:
    return bool(evaluate(expression, variables, extra_names))
