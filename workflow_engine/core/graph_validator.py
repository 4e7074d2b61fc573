"""Graph Validator: structural checks and compilation of workflow definitions."""

import heapq
import threading
from collections import defaultdict
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from ..models.core import EdgeDefinition, NodeDefinition, ValidationResult, WorkflowDefinition
from .action_provider import ActionProvider
from .exceptions import GraphValidationError
from .expressions import check_syntax
from .logging import get_logger
from .node_executors import NodeExecutor, NodeExecutorRegistry

logger = get_logger(__name__)


FAN_OUT_TYPES = frozenset({"fork", "condition"})


def _normalize_condition(condition: str) -> str:
    return " ".join(condition.split())


class CompiledWorkflow:
    """A validated definition with its adjacency and loop structure resolved.

    Only non-loop edges appear in ``outgoing``/``incoming``; loop-back edges
    are kept per loop node in ``loop_back``.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        executors: Dict[str, NodeExecutor],
        outgoing: Dict[str, List[EdgeDefinition]],
        incoming: Dict[str, List[EdgeDefinition]],
        topological_order: List[str],
        loop_back: Dict[str, EdgeDefinition],
        loop_bodies: Dict[str, FrozenSet[str]],
    ):
        self.definition = definition
        self.nodes: Dict[str, NodeDefinition] = {node.id: node for node in definition.nodes}
        self.executors = executors
        self.outgoing = outgoing
        self.incoming = incoming
        self.topological_order = topological_order
        self.loop_back = loop_back
        self.loop_bodies = loop_bodies
        self.enclosing_loop: Dict[str, Optional[str]] = {}
        for node_id in self.nodes:
            containing = [loop_id for loop_id, body in loop_bodies.items() if node_id in body]
            # Innermost loop has the smallest body.
            self.enclosing_loop[node_id] = min(
                containing, key=lambda loop_id: (len(loop_bodies[loop_id]), loop_id)
            ) if containing else None

    @property
    def key(self) -> Tuple[str, int]:
        return (self.definition.id, self.definition.version)

    @property
    def entry_node_id(self) -> str:
        return self.definition.entry_node_id


class GraphValidator:
    """Validates workflow definitions and compiles them for execution.

    ``validate`` is pure and reports every violation it finds in a
    deterministic order. ``compile`` raises on an invalid definition and
    caches compiled results by (workflow id, version).
    """

    def __init__(self, registry: NodeExecutorRegistry, action_provider: Optional[ActionProvider] = None):
        self.registry = registry
        self.action_provider = action_provider
        self._cache: Dict[Tuple[str, int], CompiledWorkflow] = {}
        self._cache_lock = threading.Lock()

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a workflow definition for structural correctness.

        Args:
            definition: The definition to validate

        Returns:
            ValidationResult: Every error and warning found
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not definition.nodes:
            errors.append("Workflow must contain at least one node")
            return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

        nodes = self._validate_unique_ids(definition, errors)
        edges = self._validate_references(definition, nodes, errors)
        self._validate_node_configs(nodes, errors)
        self._validate_edge_conditions(edges, errors)

        non_loop = [edge for edge in edges if not edge.loop_back]
        outgoing, incoming = self._adjacency(nodes, non_loop)

        self._validate_entry(definition, nodes, incoming, errors)
        self._validate_reachability(definition, nodes, edges, errors)
        cycles = self._find_cycles(nodes, outgoing)
        for cycle in cycles:
            errors.append(f"Cycle among non-loop edges: {' -> '.join(cycle)}")
        self._validate_fan_in_out(nodes, outgoing, incoming, errors, warnings)
        self._validate_branch_conditions(nodes, outgoing, errors)
        if not cycles:
            self._validate_loops(nodes, edges, outgoing, incoming, errors)

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        logger.debug(
            f"Validated workflow '{definition.id}' v{definition.version}: valid={result.is_valid}, "
            f"errors={len(errors)}, warnings={len(warnings)}"
        )
        return result

    def compile(self, definition: WorkflowDefinition) -> CompiledWorkflow:
        """Validate and compile a definition, using the cache when possible.

        Raises:
            GraphValidationError: If the definition is invalid
        """
        key = (definition.id, definition.version)
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None and cached.definition == definition:
            return cached

        result = self.validate(definition)
        if not result.is_valid:
            raise GraphValidationError(
                f"Workflow '{definition.id}' is invalid: {'; '.join(result.errors)}",
                validation_errors=result.errors,
                workflow_id=definition.id
            )

        nodes = {node.id: node for node in definition.nodes}
        non_loop = [edge for edge in definition.edges if not edge.loop_back]
        outgoing, incoming = self._adjacency(nodes, non_loop)
        loop_back = {edge.source_node_id: edge for edge in definition.edges if edge.loop_back}
        loop_bodies = {
            loop_id: frozenset(self._loop_body(edge, outgoing, incoming))
            for loop_id, edge in loop_back.items()
        }
        compiled = CompiledWorkflow(
            definition=definition,
            executors={node.id: self.registry.get(node.type) for node in definition.nodes},
            outgoing=outgoing,
            incoming=incoming,
            topological_order=self._topological_order(definition, outgoing, incoming),
            loop_back=loop_back,
            loop_bodies=loop_bodies,
        )

        with self._cache_lock:
            self._cache[key] = compiled
        logger.info(f"Compiled workflow '{definition.id}' v{definition.version} ({len(nodes)} nodes)")
        return compiled

    def invalidate(self, workflow_id: Optional[str] = None) -> None:
        with self._cache_lock:
            if workflow_id is None:
                self._cache.clear()
            else:
                for key in [key for key in self._cache if key[0] == workflow_id]:
                    del self._cache[key]

    def _validate_unique_ids(self, definition: WorkflowDefinition, errors: List[str]) -> Dict[str, NodeDefinition]:
        nodes: Dict[str, NodeDefinition] = {}
        reported: Set[str] = set()
        for node in definition.nodes:
            if node.id in nodes:
                if node.id not in reported:
                    errors.append(f"Duplicate node id: '{node.id}'")
                    reported.add(node.id)
                continue
            nodes[node.id] = node

        seen_edges: Set[str] = set()
        reported.clear()
        for edge in definition.edges:
            if edge.id in seen_edges and edge.id not in reported:
                errors.append(f"Duplicate edge id: '{edge.id}'")
                reported.add(edge.id)
            seen_edges.add(edge.id)
        return nodes

    def _validate_references(
        self, definition: WorkflowDefinition, nodes: Dict[str, NodeDefinition], errors: List[str]
    ) -> List[EdgeDefinition]:
        if definition.entry_node_id not in nodes:
            errors.append(f"Entry node '{definition.entry_node_id}' does not exist")

        valid = []
        for edge in definition.edges:
            ok = True
            if edge.source_node_id not in nodes:
                errors.append(f"Edge '{edge.id}' references non-existent source node '{edge.source_node_id}'")
                ok = False
            if edge.target_node_id not in nodes:
                errors.append(f"Edge '{edge.id}' references non-existent target node '{edge.target_node_id}'")
                ok = False
            if ok:
                valid.append(edge)
        return valid

    def _validate_node_configs(self, nodes: Dict[str, NodeDefinition], errors: List[str]):
        for node in nodes.values():
            if not self.registry.has(node.type):
                errors.append(f"Node '{node.id}' has unknown type '{node.type}'")
                continue
            errors.extend(self.registry.get(node.type).validate_config(node, self.action_provider))

    def _validate_edge_conditions(self, edges: List[EdgeDefinition], errors: List[str]):
        for edge in edges:
            if edge.condition is None:
                continue
            if edge.loop_back:
                errors.append(f"Loop-back edge '{edge.id}' cannot carry a condition")
                continue
            problem = check_syntax(edge.condition)
            if problem:
                errors.append(f"Edge '{edge.id}': {problem}")

    @staticmethod
    def _adjacency(nodes: Dict[str, NodeDefinition], edges: List[EdgeDefinition]):
        outgoing: Dict[str, List[EdgeDefinition]] = {node_id: [] for node_id in nodes}
        incoming: Dict[str, List[EdgeDefinition]] = {node_id: [] for node_id in nodes}
        for edge in sorted(edges, key=lambda e: e.id):
            outgoing[edge.source_node_id].append(edge)
            incoming[edge.target_node_id].append(edge)
        return outgoing, incoming

    def _validate_entry(self, definition, nodes, incoming, errors):
        entry = definition.entry_node_id
        if entry in nodes and incoming[entry]:
            sources = ", ".join(edge.source_node_id for edge in incoming[entry])
            errors.append(f"Entry node '{entry}' has incoming edges from: {sources}")

    def _validate_reachability(self, definition, nodes, edges, errors):
        entry = definition.entry_node_id
        if entry not in nodes:
            return
        successors = defaultdict(list)
        for edge in edges:
            successors[edge.source_node_id].append(edge.target_node_id)

        reachable = {entry}
        stack = [entry]
        while stack:
            current = stack.pop()
            for neighbor in successors[current]:
                if neighbor not in reachable:
                    reachable.add(neighbor)
                    stack.append(neighbor)

        unreachable = [node_id for node_id in nodes if node_id not in reachable]
        if unreachable:
            errors.append(f"Nodes unreachable from entry node '{entry}': {', '.join(unreachable)}")

    @staticmethod
    def _find_cycles(nodes: Dict[str, NodeDefinition], outgoing) -> List[List[str]]:
        """Return each distinct cycle as a closed path (first node repeated at the end)."""
        white, grey, black = 0, 1, 2
        color = {node_id: white for node_id in nodes}
        found: List[List[str]] = []
        seen: Set[Tuple[str, ...]] = set()

        for root in nodes:
            if color[root] != white:
                continue
            # Explicit stack so long chains do not hit the recursion limit.
            path: List[str] = [root]
            pending = [iter(outgoing[root])]
            color[root] = grey
            while pending:
                edge = next(pending[-1], None)
                if edge is None:
                    pending.pop()
                    color[path.pop()] = black
                    continue
                target = edge.target_node_id
                if color[target] == grey:
                    cycle = path[path.index(target):]
                    pivot = cycle.index(min(cycle))
                    canonical = tuple(cycle[pivot:] + cycle[:pivot])
                    if canonical not in seen:
                        seen.add(canonical)
                        found.append(list(canonical) + [canonical[0]])
                elif color[target] == white:
                    color[target] = grey
                    path.append(target)
                    pending.append(iter(outgoing[target]))
        return found

    def _validate_fan_in_out(self, nodes, outgoing, incoming, errors, warnings):
        for node in nodes.values():
            out_degree = len(outgoing[node.id])
            in_degree = len(incoming[node.id])
            if out_degree > 1 and node.type not in FAN_OUT_TYPES:
                errors.append(
                    f"Node '{node.id}' of type '{node.type}' has {out_degree} outgoing edges; "
                    f"fan-out requires a fork or condition node"
                )
            if node.type == "join":
                if in_degree == 0:
                    errors.append(f"Join node '{node.id}' has no incoming edges")
                elif in_degree == 1:
                    warnings.append(f"Join node '{node.id}' has a single incoming edge")
            elif in_degree > 1:
                errors.append(
                    f"Node '{node.id}' of type '{node.type}' has {in_degree} incoming edges; "
                    f"fan-in requires a join node"
                )

    def _validate_branch_conditions(self, nodes, outgoing, errors):
        for node in nodes.values():
            edges = outgoing[node.id]
            if node.type == "fork":
                for edge in edges:
                    if edge.condition is not None:
                        errors.append(f"Edge '{edge.id}' leaves fork node '{node.id}' and cannot carry a condition")
            elif node.type == "condition":
                for edge in edges:
                    if edge.condition is None:
                        errors.append(f"Edge '{edge.id}' leaves condition node '{node.id}' without a condition")

            by_condition: Dict[str, List[str]] = defaultdict(list)
            for edge in edges:
                if edge.condition is not None:
                    by_condition[_normalize_condition(edge.condition)].append(edge.id)
            for condition, edge_ids in by_condition.items():
                if len(edge_ids) > 1:
                    errors.append(
                        f"Ambiguous branch at node '{node.id}': edges {', '.join(edge_ids)} "
                        f"share the condition '{condition}'"
                    )

    @staticmethod
    def _reach(start: str, step) -> Set[str]:
        seen = {start}
        stack = [start]
        while stack:
            current = stack.pop()
            for neighbor in step(current):
                if neighbor not in seen:
                    seen.add(neighbor)
                    stack.append(neighbor)
        return seen

    def _loop_body(self, back_edge: EdgeDefinition, outgoing, incoming) -> Set[str]:
        forward = self._reach(back_edge.target_node_id, lambda n: [e.target_node_id for e in outgoing[n]])
        backward = self._reach(back_edge.source_node_id, lambda n: [e.source_node_id for e in incoming[n]])
        return forward & backward

    def _validate_loops(self, nodes, edges, outgoing, incoming, errors):
        back_edges: Dict[str, List[EdgeDefinition]] = defaultdict(list)
        for edge in edges:
            if not edge.loop_back:
                continue
            source = nodes[edge.source_node_id]
            if source.type != "loop":
                errors.append(
                    f"Loop-back edge '{edge.id}' starts at '{source.id}' of type '{source.type}'; "
                    f"loop-back edges must start at a loop node"
                )
                continue
            back_edges[source.id].append(edge)

        bodies: Dict[str, Set[str]] = {}
        for node in nodes.values():
            if node.type != "loop":
                continue
            loop_edges = back_edges.get(node.id, [])
            if len(loop_edges) != 1:
                errors.append(f"Loop node '{node.id}' must have exactly one loop-back edge, found {len(loop_edges)}")
                continue

            back_edge = loop_edges[0]
            body = self._loop_body(back_edge, outgoing, incoming)
            if node.id not in body:
                errors.append(
                    f"Loop-back target '{back_edge.target_node_id}' of loop '{node.id}' cannot reach the loop node"
                )
                continue

            problems = []
            for member in sorted(body):
                if member != back_edge.target_node_id:
                    outside = [e.source_node_id for e in incoming[member] if e.source_node_id not in body]
                    if outside:
                        problems.append(f"'{member}' is entered from outside the body ({', '.join(outside)})")
                if member != node.id:
                    escapes = [e.target_node_id for e in outgoing[member] if e.target_node_id not in body]
                    if escapes:
                        problems.append(f"'{member}' exits the body to {', '.join(escapes)}")
            if problems:
                errors.append(
                    f"Loop '{node.id}' body is not single-entry/single-exit: {'; '.join(problems)}"
                )
                continue
            bodies[node.id] = body

        loop_ids = sorted(bodies)
        for i, first in enumerate(loop_ids):
            for second in loop_ids[i + 1:]:
                a, b = bodies[first], bodies[second]
                if a & b and not (a <= b or b <= a):
                    errors.append(f"Loops '{first}' and '{second}' overlap without nesting")

    @staticmethod
    def _topological_order(definition: WorkflowDefinition, outgoing, incoming) -> List[str]:
        position = {node.id: index for index, node in enumerate(definition.nodes)}
        in_degree = {node_id: len(edges) for node_id, edges in incoming.items()}
        ready = [(position[node_id], node_id) for node_id, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for edge in outgoing[node_id]:
                in_degree[edge.target_node_id] -= 1
                if in_degree[edge.target_node_id] == 0:
                    heapq.heappush(ready, (position[edge.target_node_id], edge.target_node_id))
        return order
