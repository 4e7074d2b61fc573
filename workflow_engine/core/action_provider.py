"""Action Provider: the named side-effect handlers that task nodes call."""

import inspect
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Any

from .exceptions import ActionProviderError, WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class ActionContext:
    """What an action knows about the node invoking it."""
    execution_id: str
    workflow_id: str
    node_id: str
    attempt: int = 1
    iteration: int = 0
    cancellation_token: Any = None
    original_output: Optional[Dict[str, Any]] = None
    compensating: bool = False

    def raise_if_cancelled(self):
        if self.cancellation_token is not None:
            self.cancellation_token.raise_if_cancelled()


@dataclass
class _RegisteredAction:
    function: Callable
    description: str = ""
    module: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


class ActionProvider:
    """Registry of actions that can be called by task nodes and compensations.

    An action is any callable ``fn(variables, context, **params)``. It
    receives a read-only snapshot of the execution variables, an
    :class:`ActionContext` and the node's configured params, and returns
    the node output (any JSON-serialisable value) or raises.
    """

    def __init__(self):
        self._actions: Dict[str, _RegisteredAction] = {}
        self._lock = threading.RLock()

    def register_action(self, name: str, function: Callable, description: str = "", replace: bool = False) -> None:
        """Register a callable under ``name``.

        Args:
            name: Unique identifier for the action
            function: Callable to register
            description: Optional description of the action's purpose
            replace: Overwrite an existing registration instead of failing

        Raises:
            ActionProviderError: If the name is taken or the function is invalid
        """
        if not name or not name.strip():
            raise ActionProviderError("Action name cannot be empty", operation="register")

        name = name.strip()

        if not callable(function):
            raise ActionProviderError(f"Action '{name}' must be callable", action_name=name, operation="register")

        try:
            sig = inspect.signature(function)
            if len(sig.parameters) < 2 and not any(
                p.kind == inspect.Parameter.VAR_POSITIONAL for p in sig.parameters.values()
            ):
                logger.warning(f"Action '{name}' accepts fewer than two parameters (variables, context)")
        except (ValueError, TypeError) as e:
            raise ActionProviderError(
                f"Cannot inspect signature for action '{name}': {e}",
                action_name=name, operation="register"
            )

        with self._lock:
            if name in self._actions and not replace:
                raise ActionProviderError(f"Action '{name}' is already registered", action_name=name, operation="register")
            self._actions[name] = _RegisteredAction(
                function=function,
                description=description.strip() if description else (inspect.getdoc(function) or "").split("\n")[0],
                module=getattr(function, "__module__", "") or ""
            )

        logger.info(f"Registered action '{name}'")

    def unregister_action(self, name: str) -> bool:
        """Remove an action. Returns False if it was not registered."""
        with self._lock:
            removed = self._actions.pop(name.strip() if name else name, None)
        if removed:
            logger.info(f"Unregistered action '{name}'")
        return removed is not None

    def get_action(self, name: str) -> Callable:
        """Retrieve a registered action by name.

        Raises:
            ActionProviderError: If the action is not registered
        """
        if not name or not name.strip():
            raise ActionProviderError("Action name cannot be empty", operation="get")

        with self._lock:
            registered = self._actions.get(name.strip())
        if registered is None:
            raise ActionProviderError(f"Action '{name}' is not registered", action_name=name, operation="get")
        return registered.function

    def action_exists(self, name: str) -> bool:
        if not name or not isinstance(name, str) or not name.strip():
            return False
        with self._lock:
            return name.strip() in self._actions

    def list_actions(self) -> Dict[str, str]:
        """List all registered actions with their descriptions."""
        with self._lock:
            return {name: action.description for name, action in sorted(self._actions.items())}

    def get_action_info(self, name: str) -> Dict[str, str]:
        with self._lock:
            registered = self._actions.get(name)
        if registered is None:
            raise ActionProviderError(f"Action '{name}' is not registered", action_name=name, operation="info")
        return {
            "name": name,
            "description": registered.description,
            "module": registered.module,
            "function": getattr(registered.function, "__name__", repr(registered.function)),
        }

    def call_action(self, name: str, variables: Dict[str, Any], context: ActionContext, **params) -> Any:
        """Call a registered action.

        Engine errors raised by the action propagate unchanged so that
        their transient/permanent classification survives. Any other
        exception is wrapped in a recoverable ActionProviderError.

        Raises:
            ActionProviderError: If the action is unknown or fails
        """
        action = self.get_action(name)
        try:
            return action(variables, context, **params)
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise ActionProviderError(
                f"Action '{name}' failed: {type(e).__name__}: {e}",
                action_name=name,
                operation="call",
                recoverable=True
            ) from e
