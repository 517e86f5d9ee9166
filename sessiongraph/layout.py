"""Column layout for the conversation graph with an incremental position cache.

Each human turn opens a column; the assistant's work for that turn stacks
downward beneath it. Positions are cached per viewing session so that
streamed appends only place the new nodes instead of relaying out the whole
graph.
"""
from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

from sessiongraph import config
from sessiongraph.models import GraphEdge, GraphNode, LayoutResult, NodePosition

logger = logging.getLogger("sessiongraph.layout")

NODE_WIDTH = 340
LAST_MESSAGE_WIDTH = 420
BASE_HEIGHT = 50
LINE_HEIGHT = 17
CHARS_PER_LINE = 36
MAX_LINES = 8
COL_GAP = 120
ROW_GAP = 35
TOP_MARGIN = 40

EXPANDED_CHARS_PER_LINE = 34
EXPANDED_LINE_HEIGHT = 19
EXPANDED_MAX_CONTENT = 500
EXPANDED_OVERHEAD = 100


def _wrapped_lines(text: str, chars_per_line: int) -> int:
    return sum(max(1, math.ceil(len(segment) / chars_per_line)) for segment in text.split("\n"))


def estimate_node_height(node: GraphNode, expanded: bool = False) -> float:
    """Rough rendered height from label length and line wrapping."""
    if expanded:
        lines = _wrapped_lines(node.detail or node.label, EXPANDED_CHARS_PER_LINE)
        return EXPANDED_OVERHEAD + min(lines * EXPANDED_LINE_HEIGHT, EXPANDED_MAX_CONTENT)

    # The waiting-point node renders wider and shows more lines.
    max_lines = 16 if node.isLastMessage else MAX_LINES
    chars_per_line = 44 if node.isLastMessage else CHARS_PER_LINE
    char_lines = math.ceil(len(node.label) / chars_per_line)
    lines = min(max(char_lines, _wrapped_lines(node.label, chars_per_line)), max_lines)
    height = BASE_HEIGHT + lines * LINE_HEIGHT
    if node.kind == "user":
        if node.replyToSnippet:
            height += 24
        if node.turnInputTokens or node.turnOutputTokens:
            height += 4
    if node.isFirstResponse:
        height += 12
    if node.isLastMessage:
        height += 32
    return height


def node_width(node: GraphNode) -> float:
    return LAST_MESSAGE_WIDTH if node.isLastMessage else NODE_WIDTH


class LayoutCache:
    """Node id -> (x, y) positions, owned by one viewing session.

    ``visible`` holds the ids laid out by the previous call. Positions of ids
    that dropped out of view (e.g. filtered) are kept until ``prune`` runs.
    """

    def __init__(self) -> None:
        self.positions: dict[str, tuple[float, float]] = {}
        self.visible: set[str] = set()

    def __len__(self) -> int:
        return len(self.positions)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.positions

    def get(self, node_id: str) -> Optional[tuple[float, float]]:
        return self.positions.get(node_id)

    def clear(self) -> None:
        self.positions.clear()
        self.visible = set()

    def prune(self, live_ids: set[str], slack: Optional[int] = None) -> int:
        """Drop entries for ids no longer live once the cache has grown past them."""
        slack = config.LAYOUT_PRUNE_SLACK if slack is None else slack
        if len(self.positions) <= len(live_ids) + slack:
            return 0
        stale = [node_id for node_id in self.positions if node_id not in live_ids]
        for node_id in stale:
            del self.positions[node_id]
        return len(stale)


def _ordered_nodes(nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> list[GraphNode]:
    """Preorder walk from the roots; nodes unreachable from any root are appended."""
    by_id = {node.id: node for node in nodes}
    children: dict[str, list[str]] = {}
    has_parent: set[str] = set()
    for edge in edges:
        if edge.source not in by_id or edge.target not in by_id:
            continue
        children.setdefault(edge.source, []).append(edge.target)
        has_parent.add(edge.target)

    ordered: list[GraphNode] = []
    visited: set[str] = set()
    for root in (node.id for node in nodes if node.id not in has_parent):
        stack = [root]
        while stack:
            node_id = stack.pop()
            if node_id in visited:
                continue
            visited.add(node_id)
            ordered.append(by_id[node_id])
            stack.extend(reversed(children.get(node_id, [])))
    for node in nodes:
        if node.id not in visited:
            visited.add(node.id)
            ordered.append(node)
    return ordered


def conversation_layout(
    nodes: Sequence[GraphNode],
    edges: Sequence[GraphEdge],
    expanded_node_id: Optional[str] = None,
) -> dict[str, tuple[float, float]]:
    """Full relayout: one column per human turn, stacked top to bottom."""
    columns: list[list[GraphNode]] = []
    current: list[GraphNode] = []
    for node in _ordered_nodes(nodes, edges):
        if node.kind == "user" and current:
            columns.append(current)
            current = [node]
        else:
            current.append(node)
    if current:
        columns.append(current)

    positions: dict[str, tuple[float, float]] = {}
    x = 0.0
    for column in columns:
        y = float(TOP_MARGIN)
        for node in column:
            positions[node.id] = (x, y)
            y += estimate_node_height(node, node.id == expanded_node_id) + ROW_GAP
        x += NODE_WIDTH + COL_GAP
    return positions


def _incremental_threshold(total: int) -> float:
    floor = max(total * config.LAYOUT_INCREMENTAL_RATIO, config.LAYOUT_INCREMENTAL_MIN)
    return min(floor, config.LAYOUT_INCREMENTAL_MAX)


def _place_appended(
    nodes: Sequence[GraphNode],
    cache: LayoutCache,
    expanded_node_id: Optional[str],
) -> None:
    by_id = {node.id: node for node in nodes}

    max_x = 0.0
    bottom_y = 0.0
    bottom_id: Optional[str] = None
    for node_id in cache.visible:
        x, y = cache.positions[node_id]
        if bottom_id is None or x > max_x or (x == max_x and y > bottom_y):
            max_x, bottom_y, bottom_id = x, y, node_id

    bottom_node = by_id.get(bottom_id) if bottom_id else None
    bottom_height = estimate_node_height(bottom_node, bottom_id == expanded_node_id) if bottom_node else BASE_HEIGHT

    current_x = max_x
    current_y = bottom_y + bottom_height + ROW_GAP
    for node in nodes:
        if node.id in cache.visible:
            continue
        if node.kind == "user":
            current_x = max_x + NODE_WIDTH + COL_GAP
            max_x = current_x
            current_y = float(TOP_MARGIN)
        cache.positions[node.id] = (current_x, current_y)
        current_y += estimate_node_height(node, node.id == expanded_node_id) + ROW_GAP


def compute_layout(
    nodes: Sequence[GraphNode],
    edges: Sequence[GraphEdge],
    cache: LayoutCache,
    expanded_node_id: Optional[str] = None,
    force: bool = False,
) -> LayoutResult:
    """Position ``nodes``, reusing ``cache`` when the update is organic growth.

    A full relayout happens when a previously visible node disappeared (e.g. a
    filter changed the visible set), when new ids show up between known ones,
    when too many ids are new at once, or when ``force`` is set. Positions of
    hidden nodes stay cached until the cache outgrows the live set.
    """
    if not nodes:
        cache.clear()
        return LayoutResult(mode="full")

    current_ids = {node.id for node in nodes}
    new_ids: list[str] = []
    interspersed = False
    for node in nodes:
        if node.id not in cache.visible:
            new_ids.append(node.id)
        elif new_ids:
            interspersed = True
    removed = bool(cache.visible - current_ids)

    if force or not cache.visible or removed or interspersed or len(new_ids) >= _incremental_threshold(len(nodes)):
        cache.positions.update(conversation_layout(nodes, edges, expanded_node_id))
        mode = "full"
    elif new_ids:
        _place_appended(nodes, cache, expanded_node_id)
        mode = "incremental"
    else:
        mode = "unchanged"
    cache.visible = current_ids

    pruned = cache.prune(current_ids)
    if pruned:
        logger.debug(f"Pruned {pruned} stale layout entries")

    positions: dict[str, NodePosition] = {}
    for node in nodes:
        x, y = cache.get(node.id) or (0.0, 0.0)
        positions[node.id] = NodePosition(
            x=x,
            y=y,
            width=node_width(node),
            height=estimate_node_height(node, node.id == expanded_node_id),
        )
    return LayoutResult(positions=positions, newNodeIds=new_ids, mode=mode)
