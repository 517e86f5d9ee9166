"""Conversation graph construction."""

from sessiongraph.graph.builder import (
    SESSION_END_ID,
    build_graph,
    build_session_graph,
    resolve_tool_status,
    window_messages,
)

__all__ = [
    "SESSION_END_ID",
    "build_graph",
    "build_session_graph",
    "resolve_tool_status",
    "window_messages",
]
