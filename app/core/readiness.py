"""Directed acyclic readiness graph.

Both "the pipeline waits on the bootstrap handshake" and "stage n+1 waits on
stage n" are edges in one graph. A node is ready once every node it depends
on has reached a satisfying status; the handshake is a pseudo-node whose
SUCCESS counts the same as a stage's SUCCEEDED.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set
from app.core.errors import GraphCycleError
from app.core.workflow import HandshakeStatus, StageStatus

SATISFIED = frozenset({StageStatus.SUCCEEDED.value, HandshakeStatus.SUCCESS.value})
UNSATISFIABLE = frozenset({
    StageStatus.FAILED.value,
    HandshakeStatus.FAILURE.value,
    HandshakeStatus.TIMED_OUT.value,
})


def handshake_node(handshake_id: str) -> str:
    return f"handshake:{handshake_id}"


def _value(status) -> Optional[str]:
    if status is None:
        return None
    return getattr(status, "value", status)


@dataclass
class ReadinessGraph:
    edges: Dict[str, List[str]] = field(default_factory=dict)

    def add(self, node: str, depends_on: Iterable[str] = ()) -> None:
        deps = list(depends_on)
        for dep in deps:
            self.edges.setdefault(dep, [])
            if dep == node or self._reaches(dep, node):
                raise GraphCycleError(f"adding {dep} -> {node} would create a cycle")
        self.edges.setdefault(node, [])
        for dep in deps:
            if dep not in self.edges[node]:
                self.edges[node].append(dep)

    def _reaches(self, start: str, target: str) -> bool:
        # True when `start` (transitively) depends on `target`.
        seen: Set[str] = set()
        stack = [start]
        while stack:
            cur = stack.pop()
            if cur == target:
                return True
            if cur in seen:
                continue
            seen.add(cur)
            stack.extend(self.edges.get(cur, []))
        return False

    def dependencies(self, node: str) -> List[str]:
        return list(self.edges.get(node, []))

    def is_ready(self, node: str, statuses: Mapping[str, object]) -> bool:
        return all(_value(statuses.get(dep)) in SATISFIED for dep in self.edges.get(node, []))

    def is_blocked(self, node: str, statuses: Mapping[str, object]) -> bool:
        """True when some dependency can never become satisfied."""
        return any(_value(statuses.get(dep)) in UNSATISFIABLE for dep in self.edges.get(node, []))

    def order(self) -> List[str]:
        """Dependencies first, insertion order otherwise."""
        out: List[str] = []
        done: Set[str] = set()

        def visit(n: str) -> None:
            if n in done:
                return
            done.add(n)
            for dep in self.edges.get(n, []):
                visit(dep)
            out.append(n)

        for n in list(self.edges):
            visit(n)
        return out


def pipeline_graph(handshake_id: str, stage_names: Iterable[str]) -> ReadinessGraph:
    """Gate -> stage 1 -> stage 2 -> ... as a readiness graph."""
    graph = ReadinessGraph()
    previous = handshake_node(handshake_id)
    graph.add(previous)
    for name in stage_names:
        graph.add(name, [previous])
        previous = name
    return graph
