"""Pydantic models for transcript messages and the derived session graph.

Transcript models mirror the producer's JSON keys. Graph and output models use
the camelCase names the renderer consumes directly.
"""
from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ── Content blocks ──────────────────────────────────────────────────

class ThinkingBlock(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str = ""


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    input: Any = None


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False


class UnknownBlock(BaseModel):
    """Placeholder for a block we do not render; keeps block indices stable."""

    type: str = ""


ContentBlock = Union[ThinkingBlock, TextBlock, ToolUseBlock, ToolResultBlock, UnknownBlock]


# ── Transcript messages ─────────────────────────────────────────────

class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0


class UserPayload(BaseModel):
    role: str = "user"
    content: Union[str, list[ContentBlock], None] = None


class AssistantPayload(BaseModel):
    id: str = ""
    role: str = "assistant"
    model: str = ""
    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


class CompactMetadata(BaseModel):
    trigger: str = "unknown"
    preTokens: int = 0


class BaseMessage(BaseModel):
    type: str
    uuid: str = ""
    parentUuid: Optional[str] = None
    sessionId: str = ""
    timestamp: str = ""
    isSidechain: bool = False


class UserMessage(BaseMessage):
    type: Literal["user"] = "user"
    message: UserPayload = Field(default_factory=UserPayload)
    isMeta: bool = False


class AssistantMessage(BaseMessage):
    type: Literal["assistant"] = "assistant"
    message: AssistantPayload = Field(default_factory=AssistantPayload)


class SystemMessage(BaseMessage):
    type: Literal["system"] = "system"
    subtype: str = ""
    content: str = ""
    level: str = ""
    logicalParentUuid: Optional[str] = None
    compactMetadata: Optional[CompactMetadata] = None
    durationMs: Optional[int] = None


class ProgressMessage(BaseMessage):
    type: Literal["progress"] = "progress"
    data: Any = None
    toolUseID: Optional[str] = None
    parentToolUseID: Optional[str] = None


TranscriptMessage = Union[UserMessage, AssistantMessage, SystemMessage, ProgressMessage]

SessionEndReason = Literal["active", "ended", "compacted"]


# ── Graph ───────────────────────────────────────────────────────────

class GraphNode(BaseModel):
    id: str
    parentId: Optional[str] = None
    kind: str  # "user" | "thinking" | "text" | "tool_use" | "system" | "compaction" | "session_end"
    toolName: Optional[str] = None
    label: str = ""
    detail: str = ""
    status: Optional[str] = None  # "running" | "success" | "error"
    timestamp: str = ""
    isNew: bool = False
    replyToSnippet: Optional[str] = None
    isFirstResponse: bool = False
    isLastMessage: bool = False
    turnInputTokens: int = 0
    turnOutputTokens: int = 0
    compactTokens: Optional[int] = None
    endReason: Optional[str] = None


class GraphEdge(BaseModel):
    id: str
    source: str
    target: str


class SessionGraph(BaseModel):
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    windowed: bool = False
    totalMessages: int = 0


# ── Derived session state ───────────────────────────────────────────

ActivityState = Literal["idle", "thinking", "tool_running", "responding", "waiting_on_user", "compacting"]


class ActivitySnapshot(BaseModel):
    state: ActivityState = "idle"
    detail: Optional[str] = None
    lastTimestamp: str = ""


class TokenStats(BaseModel):
    inputTokens: int = 0
    outputTokens: int = 0
    cacheRead: int = 0
    cacheCreation: int = 0
    estimatedCost: float = 0.0


class NodePosition(BaseModel):
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


class LayoutResult(BaseModel):
    positions: dict[str, NodePosition] = Field(default_factory=dict)
    newNodeIds: list[str] = Field(default_factory=list)
    mode: str = "full"  # "full" | "incremental" | "unchanged"
