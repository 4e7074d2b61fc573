"""Built-in actions available to task nodes."""

import logging
import time
from typing import Any, Dict, Optional

import requests

from ..core.action_provider import ActionContext, ActionProvider
from ..core.exceptions import NodeExecutionError, TransientError
from ..core.logging import get_logger

logger = get_logger(__name__)


def noop(variables: Dict[str, Any], context: ActionContext, **kwargs) -> None:
    """Do nothing."""
    return None


def set_variables(variables: Dict[str, Any], context: ActionContext, values: Optional[Dict[str, Any]] = None,
                  **kwargs) -> Dict[str, Any]:
    """
    Return a fixed mapping as the node output.

    Args:
        variables: Current execution variables
        context: Action context
        values: Mapping to output

    Returns:
        The mapping, stored under the node's output key
    """
    return dict(values or {})


def copy_variable(variables: Dict[str, Any], context: ActionContext, source: str = "", default: Any = None,
                  **kwargs) -> Any:
    """Return the value of another variable."""
    return variables.get(source, default)


def increment(variables: Dict[str, Any], context: ActionContext, variable: str = "counter", step: float = 1,
              **kwargs) -> Any:
    """
    Return ``variables[variable] + step``.

    Point the node's ``output_key`` at the same variable to keep a counter.
    """
    current = variables.get(variable, 0)
    if not isinstance(current, (int, float)) or isinstance(current, bool):
        raise NodeExecutionError(
            f"Variable '{variable}' is not numeric: {current!r}",
            node_id=context.node_id,
            transient=False
        )
    return current + step


def log_message(variables: Dict[str, Any], context: ActionContext, message: str = "", level: str = "info",
                **kwargs) -> Dict[str, Any]:
    """Write a message to the workflow log."""
    logger.log(
        getattr(logging, level.upper(), logging.INFO),
        f"[{context.execution_id}/{context.node_id}] {message}"
    )
    return {"logged": message, "level": level}


def sleep(variables: Dict[str, Any], context: ActionContext, seconds: float = 1.0, **kwargs) -> Dict[str, Any]:
    """Block the worker for ``seconds``, checking for cancellation in between."""
    deadline = time.monotonic() + float(seconds)
    while True:
        context.raise_if_cancelled()
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        time.sleep(min(remaining, 0.05))
    return {"slept": seconds}


def fail(variables: Dict[str, Any], context: ActionContext, message: str = "Requested failure",
         transient: bool = True, **kwargs) -> None:
    """Always fail; transient failures are retried per the node's retry policy."""
    if transient:
        raise TransientError(message)
    raise NodeExecutionError(message, node_id=context.node_id, attempt=context.attempt, transient=False)


def http_request(variables: Dict[str, Any], context: ActionContext, url: str = "", method: str = "GET",
                 headers: Optional[Dict[str, str]] = None, params: Optional[Dict[str, Any]] = None,
                 body: Any = None, timeout: float = 10.0, **kwargs) -> Dict[str, Any]:
    """
    Perform an HTTP request.

    Connection problems and 5xx/429 responses are transient; other 4xx
    responses are permanent failures.

    Returns:
        ``{"status_code": int, "headers": dict, "body": parsed JSON or text}``
    """
    if not url:
        raise NodeExecutionError("http_request requires a 'url'", node_id=context.node_id, transient=False)

    try:
        response = requests.request(
            method.upper(), url, headers=headers, params=params, json=body, timeout=timeout
        )
    except (requests.ConnectionError, requests.Timeout) as e:
        raise TransientError(f"{method.upper()} {url} failed: {e}")
    except requests.RequestException as e:
        raise NodeExecutionError(f"{method.upper()} {url} failed: {e}", node_id=context.node_id, transient=False)

    if response.status_code >= 500 or response.status_code == 429:
        raise TransientError(f"{method.upper()} {url} returned {response.status_code}")
    if response.status_code >= 400:
        raise NodeExecutionError(
            f"{method.upper()} {url} returned {response.status_code}",
            node_id=context.node_id,
            transient=False
        )

    try:
        payload = response.json()
    except ValueError:
        payload = response.text

    return {
        "status_code": response.status_code,
        "headers": dict(response.headers),
        "body": payload,
    }


BUILTIN_ACTIONS = {
    "noop": noop,
    "set_variables": set_variables,
    "copy_variable": copy_variable,
    "increment": increment,
    "log_message": log_message,
    "sleep": sleep,
    "fail": fail,
    "http_request": http_request,
}


def register_builtin_actions(provider: ActionProvider, replace: bool = False) -> None:
    for name, function in BUILTIN_ACTIONS.items():
        provider.register_action(name, function, replace=replace)
