"""Graph topology over a normalized claim graph."""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Dict, Iterable, List, Sequence, Set

from quorum.analysis.artifact import Edge

REINFORCING = ("supports", "prerequisite")


@dataclass
class GraphAnalysis:
    component_count: int = 0
    components: List[List[str]] = field(default_factory=list)
    longest_chain: List[str] = field(default_factory=list)
    chain_count: int = 0
    hub_claim: str | None = None
    hub_dominance: float = 0.0
    articulation_points: List[str] = field(default_factory=list)
    cluster_cohesion: float = 1.0
    local_coherence: float = 0.0

    @property
    def largest_component_size(self) -> int:
        return max((len(c) for c in self.components), default=0)

    def to_dict(self) -> Dict:
        return asdict(self)


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


class _UnionFind:
    def __init__(self, items: Iterable[str]) -> None:
        self.parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[rb] = ra


def connected_components(claim_ids: Sequence[str], edges: Sequence[Edge]) -> List[List[str]]:
    """Components over links of any edge type, ordered by first claim appearance."""
    uf = _UnionFind(claim_ids)
    for edge in edges:
        if edge.source in uf.parent and edge.target in uf.parent:
            uf.union(edge.source, edge.target)
    groups: Dict[str, List[str]] = {}
    for claim_id in claim_ids:
        groups.setdefault(uf.find(claim_id), []).append(claim_id)
    return list(groups.values())


def longest_chain(claim_ids: Sequence[str], edges: Sequence[Edge]) -> List[str]:
    """Longest prerequisite chain. Ties keep the chain with the lowest claim ids.

    Lengths are filled in DFS post-order, which is a reverse topological
    order once edges closing a cycle are skipped.
    """
    children: Dict[str, List[str]] = {cid: [] for cid in claim_ids}
    for edge in edges:
        if edge.type == "prerequisite" and edge.source in children and edge.target in children:
            children[edge.source].append(edge.target)
    for targets in children.values():
        targets.sort()

    length: Dict[str, int] = {}
    successor: Dict[str, str | None] = {}
    on_stack: Set[str] = set()
    for start in sorted(children):
        if start in length:
            continue
        on_stack.add(start)
        stack = [(start, iter(children[start]))]
        while stack:
            node, pending = stack[-1]
            child = next(pending, None)
            if child is None:
                stack.pop()
                on_stack.discard(node)
                best, best_child = 0, None
                for candidate in children[node]:
                    if candidate in length and length[candidate] > best:
                        best, best_child = length[candidate], candidate
                length[node] = best + 1
                successor[node] = best_child
            elif child not in length and child not in on_stack:
                on_stack.add(child)
                stack.append((child, iter(children[child])))

    head: str | None = None
    for cid in sorted(length):
        if head is None or length[cid] > length[head]:
            head = cid
    chain: List[str] = []
    while head is not None:
        chain.append(head)
        head = successor[head]
    return chain


def degree_map(claim_ids: Sequence[str], edges: Sequence[Edge]) -> Dict[str, int]:
    degrees = {cid: 0 for cid in claim_ids}
    for edge in edges:
        if edge.source in degrees:
            degrees[edge.source] += 1
        if edge.target in degrees:
            degrees[edge.target] += 1
    return degrees


def hub(claim_ids: Sequence[str], edges: Sequence[Edge]) -> tuple[str | None, float]:
    """Max total-degree claim and its degree ratio over the runner-up."""
    degrees = degree_map(claim_ids, edges)
    connected = sorted((cid for cid, d in degrees.items() if d > 0), key=lambda c: (-degrees[c], c))
    if not connected:
        return None, 0.0
    if len(connected) < 2:
        return connected[0], 0.0
    top, runner_up = degrees[connected[0]], degrees[connected[1]]
    return connected[0], top / runner_up


def articulation_points(claim_ids: Sequence[str], edges: Sequence[Edge]) -> List[str]:
    """Cut vertices of the undirected claim graph (Tarjan, explicit stack)."""
    adjacency: Dict[str, List[str]] = {cid: [] for cid in claim_ids}
    for edge in edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)
            adjacency[edge.target].append(edge.source)

    discovery: Dict[str, int] = {}
    low: Dict[str, int] = {}
    points: Set[str] = set()
    counter = 0
    for root in claim_ids:
        if root in discovery:
            continue
        counter += 1
        discovery[root] = low[root] = counter
        root_children = 0
        stack = [(root, None, iter(adjacency[root]))]
        while stack:
            node, parent, neighbors = stack[-1]
            neighbor = next(neighbors, None)
            if neighbor is None:
                stack.pop()
                if parent is not None:
                    low[parent] = min(low[parent], low[node])
                    if parent != root and low[node] >= discovery[parent]:
                        points.add(parent)
            elif neighbor not in discovery:
                counter += 1
                discovery[neighbor] = low[neighbor] = counter
                if node == root:
                    root_children += 1
                stack.append((neighbor, node, iter(adjacency[neighbor])))
            elif neighbor != parent:
                low[node] = min(low[node], discovery[neighbor])
        if root_children > 1:
            points.add(root)
    return sorted(points)


def signal_strength(
    claim_count: int,
    edge_count: int,
    model_count: int,
    supporters: Sequence[Sequence[int]],
) -> float:
    if claim_count == 0:
        return 0.0
    edge_signal = clamp01(edge_count / max(3.0, claim_count * 0.15))

    counts = [len(s) for s in supporters]
    max_support = max(counts + [1])
    normalized = [c / max_support for c in counts]
    mean = sum(normalized) / len(normalized)
    variance = sum((v - mean) ** 2 for v in normalized) / len(normalized)
    support_signal = clamp01(variance * 5)

    unique_models = {idx for group in supporters for idx in group}
    coverage_signal = clamp01(len(unique_models) / max(model_count, 1))

    return edge_signal * 0.4 + support_signal * 0.3 + coverage_signal * 0.3


def analyze_graph(
    claim_ids: Sequence[str],
    edges: Sequence[Edge],
    support_ratios: Dict[str, float],
    high_support_ids: Set[str],
) -> GraphAnalysis:
    components = connected_components(claim_ids, edges)
    chain = longest_chain(claim_ids, edges)

    prereq_in = {e.target for e in edges if e.type == "prerequisite"}
    prereq_out = {e.source for e in edges if e.type == "prerequisite"}
    chain_count = sum(1 for cid in claim_ids if cid in prereq_out and cid not in prereq_in)

    hub_claim, dominance = hub(claim_ids, edges)

    n = len(high_support_ids)
    cohesion = 1.0
    if n > 1:
        reinforcing = sum(
            1 for e in edges
            if e.type in REINFORCING and e.source in high_support_ids and e.target in high_support_ids
        )
        cohesion = reinforcing / (n * (n - 1))

    total = 0.0
    weighted = 0
    for component in components:
        size = len(component)
        if size < 2:
            continue
        members = set(component)
        inner = sum(1 for e in edges if e.source in members and e.target in members)
        density = inner / (size * (size - 1))
        avg_support = sum(support_ratios.get(cid, 0.0) for cid in component) / size
        total += density * avg_support * size
        weighted += size

    return GraphAnalysis(
        component_count=len(components),
        components=components,
        longest_chain=chain,
        chain_count=chain_count,
        hub_claim=hub_claim,
        hub_dominance=dominance,
        articulation_points=articulation_points(claim_ids, edges),
        cluster_cohesion=clamp01(cohesion),
        local_coherence=total / weighted if weighted else 0.0,
    )
