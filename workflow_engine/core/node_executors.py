"""Node executors and the registry that dispatches on node type."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..models.core import NodeDefinition
from .action_provider import ActionContext, ActionProvider
from .exceptions import (
    ConfigurationError, ExecutionCancelledError, NodeExecutionError, WorkflowEngineError
)
from .expressions import ExpressionError, check_syntax, evaluate
from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class NodeOutcome:
    """Successful result of running a node."""
    output_vars: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    resume_at: Optional[datetime] = None
    loop_continue: bool = False


@dataclass
class NodeRunContext:
    """Everything a node executor may look at while it runs."""
    node: NodeDefinition
    variables: Dict[str, Any]
    execution_id: str
    workflow_id: str
    attempt: int = 1
    iteration: int = 0
    cancellation_token: Any = None
    action_provider: Optional[ActionProvider] = None

    def action_context(self) -> ActionContext:
        return ActionContext(
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            node_id=self.node.id,
            attempt=self.attempt,
            iteration=self.iteration,
            cancellation_token=self.cancellation_token,
        )


class NodeExecutor:
    """Base class for node type handlers.

    Subclasses set ``node_type`` and implement :meth:`execute`. Failures
    are reported by raising :class:`NodeExecutionError`; everything else
    an executor raises is treated as a transient failure by the scheduler.
    """

    node_type: str = ""
    # Delay nodes park on the timer wheel and are not subject to max_duration.
    enforce_timeout: bool = True

    def validate_config(self, node: NodeDefinition, action_provider: Optional[ActionProvider] = None) -> List[str]:
        return []

    def execute(self, ctx: NodeRunContext) -> NodeOutcome:
        raise NotImplementedError

    def _error(self, ctx: NodeRunContext, message: str, transient: bool = False) -> NodeExecutionError:
        return NodeExecutionError(
            message,
            node_id=ctx.node.id,
            execution_id=ctx.execution_id,
            attempt=ctx.attempt,
            transient=transient
        )


def _validate_action_ref(node_id: str, label: str, spec: Any, action_provider: Optional[ActionProvider]) -> List[str]:
    errors = []
    if not isinstance(spec, dict):
        return [f"Node '{node_id}': {label} must be an object with an 'action'"]
    action = spec.get("action")
    if not action or not isinstance(action, str):
        errors.append(f"Node '{node_id}': {label} requires an 'action' name")
    elif action_provider is not None and not action_provider.action_exists(action):
        errors.append(f"Node '{node_id}': {label} references unknown action '{action}'")
    params = spec.get("params")
    if params is not None and not isinstance(params, dict):
        errors.append(f"Node '{node_id}': {label} 'params' must be an object")
    return errors


class TaskExecutor(NodeExecutor):
    """Calls a named action; the result is stored under ``output_key`` (node id by default)."""

    node_type = "task"

    def validate_config(self, node, action_provider=None):
        errors = _validate_action_ref(node.id, "task config", node.config, action_provider)
        output_key = node.config.get("output_key")
        if output_key is not None and (not isinstance(output_key, str) or not output_key):
            errors.append(f"Node '{node.id}': 'output_key' must be a non-empty string")
        compensation = node.config.get("compensation")
        if compensation is not None:
            errors.extend(_validate_action_ref(node.id, "compensation", compensation, action_provider))
        elif node.compensatable:
            errors.append(f"Node '{node.id}' is compensatable but has no 'compensation' config")
        return errors

    def execute(self, ctx):
        if ctx.action_provider is None:
            raise self._error(ctx, "No action provider configured")

        config = ctx.node.config
        action = config["action"]
        params = config.get("params") or {}
        output_key = config.get("output_key") or ctx.node.id

        try:
            result = ctx.action_provider.call_action(action, ctx.variables, ctx.action_context(), **params)
        except (NodeExecutionError, ExecutionCancelledError):
            raise
        except WorkflowEngineError as e:
            raise NodeExecutionError(
                e.message,
                node_id=ctx.node.id,
                execution_id=ctx.execution_id,
                attempt=ctx.attempt,
                transient=e.recoverable
            ) from e

        return NodeOutcome(output_vars={output_key: result}, result=result)


class ConditionExecutor(NodeExecutor):
    """Evaluates ``config.expression``; outgoing edges see the value as ``result``."""

    node_type = "condition"

    def validate_config(self, node, action_provider=None):
        expression = node.config.get("expression")
        if expression is None:
            return [f"Node '{node.id}': condition requires an 'expression'"]
        problem = check_syntax(expression)
        return [f"Node '{node.id}': {problem}"] if problem else []

    def execute(self, ctx):
        try:
            value = evaluate(ctx.node.config["expression"], ctx.variables)
        except ExpressionError as e:
            raise self._error(ctx, e.message) from e
        return NodeOutcome(result=value)


class DelayExecutor(NodeExecutor):
    """Computes the resume time; the scheduler parks the branch until then."""

    node_type = "delay"
    enforce_timeout = False

    def validate_config(self, node, action_provider=None):
        seconds = node.config.get("seconds")
        until = node.config.get("until")
        if (seconds is None) == (until is None):
            return [f"Node '{node.id}': delay requires exactly one of 'seconds' or 'until'"]
        if seconds is not None:
            if isinstance(seconds, bool) or not isinstance(seconds, (int, float)) or seconds < 0:
                return [f"Node '{node.id}': delay 'seconds' must be a non-negative number"]
        else:
            try:
                self._parse_until(until)
            except (TypeError, ValueError):
                return [f"Node '{node.id}': delay 'until' must be an ISO-8601 timestamp"]
        return []

    @staticmethod
    def _parse_until(value: str) -> datetime:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if moment.tzinfo is not None:
            moment = moment.replace(tzinfo=None) - moment.utcoffset()
        return moment

    def execute(self, ctx):
        config = ctx.node.config
        if config.get("seconds") is not None:
            resume_at = datetime.utcnow() + timedelta(seconds=float(config["seconds"]))
        else:
            resume_at = self._parse_until(config["until"])
        return NodeOutcome(resume_at=resume_at)


class ForkExecutor(NodeExecutor):
    """Activates every outgoing edge."""

    node_type = "fork"

    def execute(self, ctx):
        return NodeOutcome()


class JoinExecutor(NodeExecutor):
    """Barrier node.

    The waiting happens in the execution context, which only makes a join
    ready once every incoming edge has been decided. By the time this runs
    all branches have arrived.
    """

    node_type = "join"

    def execute(self, ctx):
        return NodeOutcome()


class LoopExecutor(NodeExecutor):
    """Sits at the end of a loop body and decides whether to go round again.

    ``config.condition`` is a continue-while expression evaluated with
    ``iteration`` bound to the number of completed passes. Without a
    condition the body simply runs ``max_iterations`` times. Asking to
    continue once ``max_iterations`` passes have run is a permanent error.
    """

    node_type = "loop"

    def validate_config(self, node, action_provider=None):
        errors = []
        max_iterations = node.config.get("max_iterations")
        if isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 1:
            # the body runs once before the loop node is reached
            errors.append(f"Node '{node.id}': loop requires a positive integer 'max_iterations'")
        condition = node.config.get("condition")
        if condition is not None:
            problem = check_syntax(condition)
            if problem:
                errors.append(f"Node '{node.id}': {problem}")
        output_key = node.config.get("output_key")
        if output_key is not None and (not isinstance(output_key, str) or not output_key):
            errors.append(f"Node '{node.id}': 'output_key' must be a non-empty string")
        return errors

    def execute(self, ctx):
        config = ctx.node.config
        max_iterations = config["max_iterations"]
        passes = ctx.iteration + 1
        condition = config.get("condition")

        if condition is None:
            should_continue = passes < max_iterations
        else:
            try:
                should_continue = bool(evaluate(condition, ctx.variables, {"iteration": passes}))
            except ExpressionError as e:
                raise self._error(ctx, e.message) from e
            if should_continue and passes >= max_iterations:
                raise self._error(
                    ctx,
                    f"Loop '{ctx.node.id}' exceeded max_iterations={max_iterations}"
                )

        output_key = config.get("output_key") or ctx.node.id
        return NodeOutcome(
            output_vars={output_key: {"iterations": passes}},
            result=should_continue,
            loop_continue=should_continue
        )


class NodeExecutorRegistry:
    """Maps node type names to executors."""

    def __init__(self):
        self._executors: Dict[str, NodeExecutor] = {}

    def register(self, executor: NodeExecutor, replace: bool = False) -> None:
        node_type = executor.node_type
        if not node_type:
            raise ConfigurationError(f"{type(executor).__name__} does not declare a node_type")
        if node_type in self._executors and not replace:
            raise ConfigurationError(f"Node type '{node_type}' is already registered")
        self._executors[node_type] = executor
        logger.debug(f"Registered executor for node type '{node_type}'")

    def get(self, node_type: str) -> NodeExecutor:
        try:
            return self._executors[node_type]
        except KeyError:
            raise ConfigurationError(f"Unknown node type '{node_type}'") from None

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def node_types(self) -> List[str]:
        return sorted(self._executors)


def create_default_registry() -> NodeExecutorRegistry:
    registry = NodeExecutorRegistry()
    for executor in (TaskExecutor(), ConditionExecutor(), DelayExecutor(), ForkExecutor(),
                     JoinExecutor(), LoopExecutor()):
        registry.register(executor)
    return registry
