"""Infer what the assistant is doing right now from the tail of the log.

The classifier is stateless: it is recomputed from the message list after
every change, so a missed transition can never leave it stuck.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from sessiongraph import config
from sessiongraph.date_utils import age_seconds
from sessiongraph.graph.builder import COMPACT_BOUNDARY_SUBTYPE
from sessiongraph.models import (
    ActivitySnapshot,
    AssistantMessage,
    ProgressMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    TranscriptMessage,
    UserMessage,
)

END_TURN_STOP_REASON = "end_turn"


def _classify_tail(messages: Sequence[TranscriptMessage]) -> tuple[str, Optional[str]]:
    turn_closed = False
    for message in reversed(messages):
        if isinstance(message, ProgressMessage):
            continue
        if isinstance(message, SystemMessage):
            if message.subtype == COMPACT_BOUNDARY_SUBTYPE:
                return "compacting", None
            # turn_duration and friends are written once a turn has finished
            turn_closed = True
            continue
        if isinstance(message, AssistantMessage):
            content = message.message.content
            if not content:
                continue
            last = content[-1]
            if turn_closed:
                return ("waiting_on_user", None) if isinstance(last, TextBlock) else ("idle", None)
            if message.message.stop_reason == END_TURN_STOP_REASON:
                return "waiting_on_user", None
            if isinstance(last, ThinkingBlock):
                return "thinking", None
            if isinstance(last, ToolUseBlock):
                return "tool_running", last.name or None
            if isinstance(last, TextBlock):
                return "responding", None
            return "idle", None
        if isinstance(message, UserMessage):
            return "idle", None
    return "idle", None


def _last_timestamp(messages: Sequence[TranscriptMessage]) -> str:
    for message in reversed(messages):
        if message.timestamp:
            return message.timestamp
    return ""


def infer_activity(
    messages: Sequence[TranscriptMessage],
    live: Optional[bool] = None,
    now: Optional[datetime] = None,
    stale_after: Optional[float] = None,
    silence_after: Optional[float] = None,
) -> ActivitySnapshot:
    """Classify the current activity.

    ``live`` is the advisory liveness hint; True suppresses the staleness
    guard, False or None leave it in force.
    """
    stale_after = config.ACTIVITY_STALE_SECONDS if stale_after is None else stale_after
    silence_after = config.ACTIVITY_SILENCE_SECONDS if silence_after is None else silence_after

    state, detail = _classify_tail(messages)
    last_ts = _last_timestamp(messages)
    age = age_seconds(last_ts, now)

    if age is not None:
        if live is not True and age > stale_after:
            state, detail = "idle", None
        elif state in ("thinking", "responding") and age > silence_after:
            # A closing signal was most likely missed.
            state, detail = "waiting_on_user", None

    return ActivitySnapshot(state=state, detail=detail, lastTimestamp=last_ts)
