"""Turn an ordered transcript message list into the conversation graph.

The build is a pure function of its inputs and runs in two passes:

1. Cross-reference indices: tool results by ``tool_use_id`` and the last
   reply text per API call (a streamed reply is split into several chunks
   that share one call id).
2. Node synthesis in file order. Every message uuid resolves either to the
   nodes it produced or to a redirect to its parent, so edges can see through
   entries that produce nothing visible (tool-result carriers, injected
   wrappers).

Node ids derive from message uuids (plus the content-block index for
assistant blocks), so building any prefix of a log yields a subset of the
ids of the full build with the same static fields.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

from sessiongraph import config
from sessiongraph.graph.labels import (
    format_compaction,
    format_system,
    format_tool_detail,
    format_tool_label,
    truncate,
)
from sessiongraph.models import (
    AssistantMessage,
    GraphEdge,
    GraphNode,
    ProgressMessage,
    SessionGraph,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
    TranscriptMessage,
    UserMessage,
)

logger = logging.getLogger("sessiongraph.graph")

SESSION_END_ID = "__session_end__"
COMPACT_BOUNDARY_SUBTYPE = "compact_boundary"
QUESTION_TOOL_NAMES = {"AskUserQuestion"}

_EXIT_CODE_PATTERN = re.compile(r"exit code\s+(-?\d+)")
# Producer-injected wrappers that carry no human-authored text.
_WRAPPER_PATTERN = re.compile(
    r"<(local-command-caveat|local-command-stdout|local-command-stderr|system-reminder"
    r"|command-name|command-message|command-args)>[\s\S]*?</\1>",
    re.IGNORECASE,
)

_USER_LABEL_LIMIT = 160
_THINKING_LABEL_LIMIT = 120
_TEXT_LABEL_LIMIT = 80
_SNIPPET_LIMIT = 100


@dataclass(frozen=True)
class RealNodes:
    node_ids: tuple[str, ...]


@dataclass(frozen=True)
class Redirect:
    parent_uuid: str


Resolution = Union[RealNodes, Redirect]


# ── Pass 1 helpers ──────────────────────────────────────────────────

def tool_result_text(content: Any) -> str:
    """Flatten a tool_result payload (literal string or nested text blocks)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    chunks.append(text)
        return "\n".join(chunks)
    return str(content)


def resolve_tool_status(tool_use_id: str, tool_results: dict[str, str]) -> str:
    result = tool_results.get(tool_use_id)
    if result is None:
        return "running"
    lowered = result.lower()
    if "error" in lowered:
        return "error"
    for match in _EXIT_CODE_PATTERN.finditer(lowered):
        if int(match.group(1)) != 0:
            return "error"
    return "success"


def _call_id(message: AssistantMessage) -> str:
    return message.message.id or message.uuid


def _index_tool_results(messages: Sequence[TranscriptMessage]) -> dict[str, str]:
    results: dict[str, str] = {}
    for message in messages:
        if not isinstance(message, UserMessage):
            continue
        content = message.message.content
        if not isinstance(content, list):
            continue
        for block in content:
            if isinstance(block, ToolResultBlock) and block.tool_use_id:
                results[block.tool_use_id] = tool_result_text(block.content)
    return results


def _index_replies(messages: Sequence[TranscriptMessage]) -> tuple[dict[str, str], dict[str, str]]:
    """Return (reply text by call id, call id by chunk uuid)."""
    reply_by_call: dict[str, str] = {}
    call_by_uuid: dict[str, str] = {}
    for message in messages:
        if not isinstance(message, AssistantMessage):
            continue
        call_id = _call_id(message)
        call_by_uuid.setdefault(message.uuid, call_id)
        texts = [b.text for b in message.message.content if isinstance(b, TextBlock) and b.text.strip()]
        if texts:
            reply_by_call[call_id] = texts[-1]
    return reply_by_call, call_by_uuid


def user_visible_text(message: UserMessage) -> Optional[str]:
    """Human-authored text of a user entry, or None when it should not be a node."""
    if message.isMeta:
        return None
    content = message.message.content
    if content is None:
        return None
    if isinstance(content, str):
        text = content
    else:
        if not content or all(isinstance(b, ToolResultBlock) for b in content):
            return None
        text = "\n".join(b.text for b in content if isinstance(b, TextBlock) and b.text.strip())
    visible = _WRAPPER_PATTERN.sub("", text).strip()
    return visible or None


def _reply_snippet(
    parent_uuid: Optional[str],
    parents: dict[str, Optional[str]],
    call_by_uuid: dict[str, str],
    reply_by_call: dict[str, str],
    max_hops: int,
) -> Optional[str]:
    visited: set[str] = set()
    current = parent_uuid
    hops = 0
    while current and current not in visited and hops < max_hops:
        visited.add(current)
        hops += 1
        call_id = call_by_uuid.get(current)
        if call_id:
            text = reply_by_call.get(call_id)
            if text:
                return truncate(" ".join(text.split()), _SNIPPET_LIMIT)
        current = parents.get(current)
    return None


def resolve_uuid(uuid: str, resolution: dict[str, Resolution]) -> Optional[RealNodes]:
    """Chase redirects from ``uuid`` to the nearest ancestor that has nodes."""
    visited: set[str] = set()
    current: Optional[str] = uuid
    while current and current not in visited:
        visited.add(current)
        resolved = resolution.get(current)
        if isinstance(resolved, RealNodes):
            return resolved
        if isinstance(resolved, Redirect):
            current = resolved.parent_uuid
            continue
        return None
    return None


# ── Pass 2 ──────────────────────────────────────────────────────────

def _assistant_nodes(
    message: AssistantMessage,
    tool_results: dict[str, str],
    awaiting_first_response: bool,
) -> tuple[list[GraphNode], bool]:
    nodes: list[GraphNode] = []
    parent_id = message.parentUuid
    for index, block in enumerate(message.message.content):
        node_id = f"{message.uuid}-{index}"
        if isinstance(block, ThinkingBlock):
            node = GraphNode(
                id=node_id,
                parentId=parent_id,
                kind="thinking",
                label=truncate(block.thinking, _THINKING_LABEL_LIMIT),
                detail=block.thinking,
                timestamp=message.timestamp,
            )
        elif isinstance(block, TextBlock):
            node = GraphNode(
                id=node_id,
                parentId=parent_id,
                kind="text",
                label=truncate(block.text, _TEXT_LABEL_LIMIT),
                detail=block.text,
                timestamp=message.timestamp,
                isFirstResponse=awaiting_first_response,
            )
            awaiting_first_response = False
        elif isinstance(block, ToolUseBlock):
            node = GraphNode(
                id=node_id,
                parentId=parent_id,
                kind="tool_use",
                toolName=block.name,
                label=format_tool_label(block.name, block.input),
                detail=format_tool_detail(block.input),
                status=resolve_tool_status(block.id, tool_results),
                timestamp=message.timestamp,
            )
        else:
            continue
        nodes.append(node)
        parent_id = node_id
    return nodes, awaiting_first_response


def _system_node(message: SystemMessage) -> GraphNode:
    if message.subtype == COMPACT_BOUNDARY_SUBTYPE:
        meta = message.compactMetadata
        trigger = meta.trigger if meta else "unknown"
        pre_tokens = meta.preTokens if meta else 0
        label, detail = format_compaction(trigger, pre_tokens)
        return GraphNode(
            id=message.uuid,
            parentId=message.logicalParentUuid or message.parentUuid,
            kind="compaction",
            label=label,
            detail=detail,
            timestamp=message.timestamp,
            compactTokens=pre_tokens,
        )
    label, detail = format_system(message.subtype, message.content, message.durationMs)
    return GraphNode(
        id=message.uuid,
        parentId=message.parentUuid,
        kind="system",
        label=label,
        detail=detail,
        timestamp=message.timestamp,
    )


def _logical_parent(message: TranscriptMessage) -> Optional[str]:
    if isinstance(message, SystemMessage) and message.subtype == COMPACT_BOUNDARY_SUBTYPE:
        return message.logicalParentUuid or message.parentUuid
    return message.parentUuid


def _turn_totals(usages: dict[str, TokenUsage]) -> tuple[int, int]:
    tokens_in = sum(
        u.input_tokens + u.cache_read_input_tokens + u.cache_creation_input_tokens for u in usages.values()
    )
    tokens_out = sum(u.output_tokens for u in usages.values())
    return tokens_in, tokens_out


def _mark_waiting_point(nodes: list[GraphNode]) -> None:
    for node in reversed(nodes):
        if node.kind in ("system", "thinking"):
            continue
        if node.kind == "text" or (node.kind == "tool_use" and node.toolName in QUESTION_TOOL_NAMES):
            node.isLastMessage = True
        return


def build_graph(
    messages: Sequence[TranscriptMessage],
    end_reason: Optional[str] = None,
) -> SessionGraph:
    """Build nodes and edges for ``messages`` (in file order).

    ``end_reason`` is the external liveness hint: "active" flags the node the
    session is waiting on, "ended"/"compacted" append a synthetic end node,
    None leaves the tail untouched.
    """
    max_hops = config.REPLY_SNIPPET_MAX_HOPS
    tool_results = _index_tool_results(messages)
    reply_by_call, call_by_uuid = _index_replies(messages)
    parents: dict[str, Optional[str]] = {}
    for message in messages:
        if message.uuid:
            parents.setdefault(message.uuid, message.parentUuid)

    nodes: list[GraphNode] = []
    node_order: dict[str, int] = {}
    resolution: dict[str, Resolution] = {}
    linked: list[TranscriptMessage] = []
    turn_usage: dict[str, dict[str, TokenUsage]] = {}
    awaiting_first_response = False

    for message in messages:
        if isinstance(message, ProgressMessage) or not message.uuid:
            continue
        if message.uuid in resolution:
            logger.debug(f"Ignoring duplicate entry {message.uuid}")
            continue

        try:
            created: list[GraphNode] = []
            if isinstance(message, UserMessage):
                text = user_visible_text(message)
                if text is not None:
                    created.append(
                        GraphNode(
                            id=message.uuid,
                            parentId=message.parentUuid,
                            kind="user",
                            label=truncate(text, _USER_LABEL_LIMIT),
                            detail=text,
                            timestamp=message.timestamp,
                            replyToSnippet=_reply_snippet(
                                message.parentUuid, parents, call_by_uuid, reply_by_call, max_hops
                            ),
                        )
                    )
            elif isinstance(message, AssistantMessage):
                created, awaiting_first_response = _assistant_nodes(
                    message, tool_results, awaiting_first_response
                )
            elif isinstance(message, SystemMessage):
                created.append(_system_node(message))
            else:
                continue
        except Exception as exc:
            logger.debug(f"Dropping entry {message.uuid}: {exc}")
            continue

        if not created:
            if message.parentUuid:
                resolution[message.uuid] = Redirect(message.parentUuid)
            else:
                resolution[message.uuid] = RealNodes(())
            continue

        for node in created:
            node_order[node.id] = len(nodes)
            nodes.append(node)
        resolution[message.uuid] = RealNodes(tuple(node.id for node in created))
        linked.append(message)

        if isinstance(message, UserMessage):
            turn_usage[message.uuid] = {}
            awaiting_first_response = True

    # Separate walk: usage also arrives on chunks that produced no nodes.
    current_turn: Optional[str] = None
    seen_uuids: set[str] = set()
    for message in messages:
        if message.uuid:
            if message.uuid in seen_uuids:
                continue
            seen_uuids.add(message.uuid)
        if isinstance(message, UserMessage) and message.uuid in turn_usage:
            current_turn = message.uuid
        elif isinstance(message, AssistantMessage) and current_turn and message.message.usage:
            # Streamed chunks re-report usage; the last chunk per call wins.
            turn_usage[current_turn][_call_id(message)] = message.message.usage

    edges: list[GraphEdge] = []
    edge_ids: set[str] = set()

    def add_edge(source: str, target: str) -> None:
        edge_id = f"{source}->{target}"
        if source == target or edge_id in edge_ids:
            return
        # Only link forward in file order so the result stays acyclic.
        if node_order.get(source, -1) >= node_order.get(target, -1):
            return
        edge_ids.add(edge_id)
        edges.append(GraphEdge(id=edge_id, source=source, target=target))

    for message in linked:
        child_ids = resolution[message.uuid].node_ids  # type: ignore[union-attr]
        parent_uuid = _logical_parent(message)
        if parent_uuid:
            ancestor = resolve_uuid(parent_uuid, resolution)
            if ancestor is not None and ancestor.node_ids:
                add_edge(ancestor.node_ids[-1], child_ids[0])
        for source, target in zip(child_ids, child_ids[1:]):
            add_edge(source, target)

    nodes_by_id = {node.id: node for node in nodes}
    for turn_id, usages in turn_usage.items():
        node = nodes_by_id.get(turn_id)
        if node is not None:
            node.turnInputTokens, node.turnOutputTokens = _turn_totals(usages)

    if end_reason == "active":
        _mark_waiting_point(nodes)
    elif end_reason in ("ended", "compacted") and nodes:
        last = nodes[-1]
        compacted = end_reason == "compacted"
        nodes.append(
            GraphNode(
                id=SESSION_END_ID,
                parentId=last.id,
                kind="session_end",
                label="Session Compacted" if compacted else "Session Ended",
                detail=(
                    "Context was compressed. A new session may continue this work."
                    if compacted
                    else "No further messages were recorded."
                ),
                timestamp=last.timestamp,
                endReason=end_reason,
            )
        )
        edges.append(GraphEdge(id=f"{last.id}->{SESSION_END_ID}", source=last.id, target=SESSION_END_ID))

    return SessionGraph(nodes=nodes, edges=edges, totalMessages=len(messages))


def window_messages(
    messages: Sequence[TranscriptMessage],
    max_turns: Optional[int],
) -> tuple[list[TranscriptMessage], bool]:
    """Keep only the last ``max_turns`` human turns and everything after them."""
    if not max_turns or max_turns <= 0:
        return list(messages), False
    turn_starts = [
        index
        for index, message in enumerate(messages)
        if isinstance(message, UserMessage) and user_visible_text(message) is not None
    ]
    if len(turn_starts) <= max_turns:
        return list(messages), False
    cutoff = turn_starts[-max_turns]
    return list(messages[cutoff:]), True


def build_session_graph(
    messages: Sequence[TranscriptMessage],
    end_reason: Optional[str] = None,
    max_turns: Optional[int] = None,
) -> SessionGraph:
    """Window the message list, build the graph and report the true total."""
    windowed, applied = window_messages(messages, max_turns)
    graph = build_graph(windowed, end_reason)
    graph.windowed = applied
    graph.totalMessages = len(messages)
    return graph
