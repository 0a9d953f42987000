from collections import defaultdict
from dataclasses import dataclass, field
import heapq
import logging
from typing import Dict, Iterable, List, Set

from .models import Story


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEdge:
    source: str
    target: str
    type: str = "blocks"


@dataclass
class DependencyGraph:
    nodes: List[str] = field(default_factory=list)
    edges: List[DependencyEdge] = field(default_factory=list)


def _ready_entry(story: Story):
    # heapq is a min-heap: highest priority first, then key order
    return (-(story.priority_score or 0), story.key)


def topo_sort(stories: List[Story]) -> List[Story]:
    """
    Order stories so that every blocker comes before the stories it blocks.

    Among stories whose blockers are all placed, the higher priority score
    wins. Blockers outside the given set are ignored. Stories left over by a
    cycle are appended by priority so the result always holds every story.
    """
    story_map = {story.key: story for story in stories}
    indegree = {key: 0 for key in story_map}
    forward = defaultdict(list)
    for story in stories:
        for blocker in dict.fromkeys(story.blocked_by or []):
            if blocker not in story_map:
                continue
            forward[blocker].append(story.key)
            indegree[story.key] += 1

    queue = []
    for key, count in indegree.items():
        if count == 0:
            heapq.heappush(queue, _ready_entry(story_map[key]))

    order = []
    while queue:
        _, current = heapq.heappop(queue)
        order.append(story_map[current])
        for nxt in forward.get(current, []):
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                heapq.heappush(queue, _ready_entry(story_map[nxt]))

    if len(order) < len(story_map):
        placed = {story.key for story in order}
        remaining = sorted(
            (story for key, story in story_map.items() if key not in placed),
            key=_ready_entry,
        )
        logger.warning(
            "Circular dependency detected: sorted %d of %d stories, cycle through %s",
            len(order), len(story_map), ", ".join(detect_cycles(stories)),
        )
        order.extend(remaining)
    return order


def detect_cycles(stories: List[Story]) -> List[str]:
    """Return the keys on the first blocked-by cycle found, or an empty list."""
    graph: Dict[str, List[str]] = {}
    for story in stories:
        graph[story.key] = sorted(set(story.blocked_by or []))

    visited: Set[str] = set()
    for root in sorted(graph):
        if root in visited:
            continue
        path = [root]
        on_path = {root}
        visited.add(root)
        stack = [iter(graph.get(root, []))]
        while stack:
            neighbor = next(stack[-1], None)
            if neighbor is None:
                stack.pop()
                on_path.discard(path.pop())
                continue
            if neighbor in on_path:
                return path[path.index(neighbor):]
            if neighbor in visited:
                continue
            visited.add(neighbor)
            path.append(neighbor)
            on_path.add(neighbor)
            stack.append(iter(graph.get(neighbor, [])))
    return []


def can_start(story: Story, completed_keys: Iterable[str]) -> bool:
    if not story.blocked_by:
        return True
    return set(story.blocked_by).issubset(set(completed_keys))


def build_dependency_graph(stories: List[Story]) -> DependencyGraph:
    nodes = [story.key for story in stories]
    edges = []
    seen = set()

    def add_edge(source, target):
        edge = DependencyEdge(source, target)
        if edge not in seen:
            seen.add(edge)
            edges.append(edge)

    for story in stories:
        for target in story.blocks or []:
            add_edge(story.key, target)
        for blocker in story.blocked_by or []:
            add_edge(blocker, story.key)
    return DependencyGraph(nodes=nodes, edges=edges)
