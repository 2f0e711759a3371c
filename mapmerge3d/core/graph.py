"""
Graph algorithms over pairwise estimates

- Largest connected component of confident estimates
- Maximum spanning tree (Kruskal) weighted by confidence
- Tree center as reference frame (minimizes the longest transform chain)
- Breadth-first edge order for transform propagation
"""

import logging
from collections import defaultdict, deque
from typing import Dict, Iterable, List, Set, Tuple

from mapmerge3d.core.estimates import TransformEstimate, valid_estimates

logger = logging.getLogger(__name__)


class UnionFind:
    """Disjoint sets over arbitrary hashable nodes"""

    def __init__(self, nodes: Iterable[int] = ()):
        self._parent: Dict[int, int] = {}
        self._size: Dict[int, int] = {}
        for node in nodes:
            self.add(node)

    def add(self, node: int):
        if node not in self._parent:
            self._parent[node] = node
            self._size[node] = 1

    def find(self, node: int) -> int:
        self.add(node)
        root = node
        while self._parent[root] != root:
            root = self._parent[root]
        # Path compression
        while self._parent[node] != root:
            self._parent[node], node = root, self._parent[node]
        return root

    def union(self, a: int, b: int) -> bool:
        """Merge the sets of a and b. Returns False if already in the same set."""
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        if self._size[root_a] < self._size[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size[root_b]
        return True

    def groups(self) -> Dict[int, List[int]]:
        """Map of set representative -> sorted members"""
        groups = defaultdict(list)
        for node in sorted(self._parent):
            groups[self.find(node)].append(node)
        return dict(groups)


def largest_connected_component(
    estimates: Iterable[TransformEstimate],
    confidence_threshold: float
) -> List[TransformEstimate]:
    """
    Select the edges of the largest connected component of confident estimates.

    Failed estimates and estimates below confidence_threshold are dropped
    first. Components are compared by node count; on a tie the component
    containing the lowest map index wins.

    Args:
        estimates: All pairwise estimates
        confidence_threshold: Minimum confidence for an edge to be kept

    Returns:
        Edges of the selected component in input order (empty if no edge survives)
    """
    edges = valid_estimates(estimates, confidence_threshold)
    if not edges:
        logger.warning(f"No pairwise estimate reached confidence {confidence_threshold}")
        return []

    sets = UnionFind()
    for est in edges:
        sets.union(est.source_idx, est.target_idx)

    components = list(sets.groups().values())
    largest = max(components, key=lambda nodes: (len(nodes), -nodes[0]))
    members = set(largest)

    logger.info(
        f"Found {len(components)} connected components, "
        f"largest has {len(largest)} maps: {largest}"
    )
    return [est for est in edges if est.source_idx in members]


class SpanningTree:
    """Tree over map indices built from estimate edges"""

    def __init__(self, edges: List[TransformEstimate], nodes: Iterable[int] = ()):
        self.edges = list(edges)
        self.adjacency: Dict[int, List[int]] = defaultdict(list)
        for node in nodes:
            self.adjacency.setdefault(node, [])
        for est in self.edges:
            self.adjacency[est.source_idx].append(est.target_idx)
            self.adjacency[est.target_idx].append(est.source_idx)
        for neighbours in self.adjacency.values():
            neighbours.sort()
        self.centers = tree_centers(self.adjacency)

    @property
    def nodes(self) -> List[int]:
        return sorted(self.adjacency)

    @property
    def root(self) -> int:
        """Reference frame: the lowest-index center"""
        if not self.centers:
            raise ValueError("Empty spanning tree has no root")
        return self.centers[0]

    @property
    def total_weight(self) -> float:
        return sum(est.confidence for est in self.edges)

    def __len__(self):
        return len(self.edges)


def find_max_spanning_tree(edges: List[TransformEstimate]) -> SpanningTree:
    """
    Build a maximum-weight spanning tree using Kruskal's algorithm.

    Edges are considered by descending confidence (ties by index pair), and an
    edge is kept only if it joins two separate subtrees. For a connected
    input this gives exactly node_count - 1 edges.
    """
    nodes: Set[int] = set()
    for est in edges:
        nodes.update(est.nodes)

    ordered = sorted(edges, key=lambda est: (-est.confidence, est.source_idx, est.target_idx))
    sets = UnionFind(nodes)
    tree_edges = [est for est in ordered if sets.union(est.source_idx, est.target_idx)]

    tree = SpanningTree(tree_edges, nodes)
    if tree_edges:
        logger.info(
            f"Spanning tree created with {len(tree_edges)} edges for {len(nodes)} maps "
            f"(total confidence {tree.total_weight:.3f}, centers {tree.centers})"
        )
    return tree


def _eccentricity(adjacency: Dict[int, List[int]], start: int) -> int:
    """Largest hop distance from start to any reachable node"""
    distances = {start: 0}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for neighbour in adjacency[current]:
            if neighbour not in distances:
                distances[neighbour] = distances[current] + 1
                queue.append(neighbour)
    return max(distances.values())


def tree_centers(adjacency: Dict[int, List[int]]) -> List[int]:
    """
    Nodes with minimal eccentricity, sorted ascending.

    A tree has one or two centers; an empty graph has none.
    """
    if not adjacency:
        return []
    eccentricities = {node: _eccentricity(adjacency, node) for node in adjacency}
    best = min(eccentricities.values())
    return sorted(node for node, ecc in eccentricities.items() if ecc == best)


def breadth_first_edges(tree: SpanningTree, root: int) -> List[Tuple[int, int]]:
    """
    (parent, child) pairs in breadth-first order from root.

    Each tree node other than root appears exactly once as a child;
    neighbours are visited in ascending index order.
    """
    order = []
    visited = {root}
    queue = deque([root])
    while queue:
        current = queue.popleft()
        for neighbour in tree.adjacency.get(current, []):
            if neighbour in visited:
                continue
            visited.add(neighbour)
            order.append((current, neighbour))
            queue.append(neighbour)
    return order
