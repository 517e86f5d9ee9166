"""Classify raw JSONL transcript lines into typed messages.

Each line is routed by its ``type`` discriminator into the closed set of
user / assistant / system / progress messages. Anything else (a different
``type``, invalid JSON, a non-object payload, a missing ``uuid``) is dropped
without an error: it is simply not part of the graph's vocabulary.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from sessiongraph.models import (
    AssistantMessage,
    ContentBlock,
    ProgressMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    TranscriptMessage,
    UnknownBlock,
    UserMessage,
)

logger = logging.getLogger("sessiongraph.parser")

_BLOCK_MODELS: dict[str, type] = {
    "thinking": ThinkingBlock,
    "text": TextBlock,
    "tool_use": ToolUseBlock,
    "tool_result": ToolResultBlock,
}

_MESSAGE_MODELS: dict[str, type] = {
    "user": UserMessage,
    "assistant": AssistantMessage,
    "system": SystemMessage,
    "progress": ProgressMessage,
}

# Progress entries are allowed to omit a uuid; they never become nodes.
_UUID_REQUIRED = {"user", "assistant", "system"}

_USAGE_KEYS = (
    "input_tokens",
    "output_tokens",
    "cache_read_input_tokens",
    "cache_creation_input_tokens",
)


def _coerce_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_block(raw: Any) -> ContentBlock:
    if isinstance(raw, str):
        return TextBlock(text=raw)
    if not isinstance(raw, dict):
        return UnknownBlock(type=type(raw).__name__)

    block_type = str(raw.get("type") or "")
    model = _BLOCK_MODELS.get(block_type)
    if model is None:
        return UnknownBlock(type=block_type)
    try:
        return model.model_validate(raw)
    except ValidationError:
        logger.debug(f"Dropping malformed {block_type} block")
        return UnknownBlock(type=block_type)


def _coerce_blocks(raw: Any) -> list[ContentBlock]:
    if not isinstance(raw, list):
        return []
    return [_coerce_block(item) for item in raw]


def _coerce_usage(raw: Any) -> Optional[dict[str, int]]:
    if not isinstance(raw, dict):
        return None
    return {key: _coerce_int(raw.get(key)) for key in _USAGE_KEYS}


def _normalize_payload(entry_type: str, payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    normalized = dict(payload)
    content = normalized.get("content")
    if entry_type == "user":
        if not isinstance(content, str):
            normalized["content"] = _coerce_blocks(content) if isinstance(content, list) else None
    else:
        normalized["content"] = _coerce_blocks(content)
        normalized["usage"] = _coerce_usage(normalized.get("usage"))
        for key in ("id", "model"):
            if not isinstance(normalized.get(key), str):
                normalized.pop(key, None)
    return normalized


def _normalize_compact_metadata(raw: Any) -> Optional[dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    trigger = raw.get("trigger")
    return {
        "trigger": trigger if isinstance(trigger, str) and trigger else "unknown",
        "preTokens": _coerce_int(raw.get("preTokens")),
    }


def parse_entry(entry: Any) -> Optional[TranscriptMessage]:
    """Classify an already-decoded JSON object, or return None."""
    if not isinstance(entry, dict):
        return None

    entry_type = entry.get("type")
    model = _MESSAGE_MODELS.get(entry_type) if isinstance(entry_type, str) else None
    if model is None:
        return None

    uuid = entry.get("uuid")
    if entry_type in _UUID_REQUIRED and not (isinstance(uuid, str) and uuid):
        return None

    data = dict(entry)
    if not isinstance(data.get("parentUuid"), str) or not data.get("parentUuid"):
        data["parentUuid"] = None
    for key in ("timestamp", "sessionId"):
        if not isinstance(data.get(key), str):
            data[key] = ""
    for key in ("isSidechain", "isMeta"):
        if key in data:
            data[key] = data[key] is True
    if entry_type in ("user", "assistant"):
        data["message"] = _normalize_payload(entry_type, entry.get("message"))
    elif entry_type == "system":
        data["compactMetadata"] = _normalize_compact_metadata(entry.get("compactMetadata"))
        for key in ("content", "subtype", "level"):
            if not isinstance(data.get(key), str):
                data.pop(key, None)
        if not isinstance(data.get("logicalParentUuid"), str) or not data.get("logicalParentUuid"):
            data["logicalParentUuid"] = None
        data["durationMs"] = _coerce_int(data.get("durationMs"), 0) if "durationMs" in data else None
    elif not isinstance(uuid, str):
        data["uuid"] = ""

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.debug(f"Dropping malformed {entry_type} entry: {exc.error_count()} errors")
        return None


def parse_line(line: str | bytes) -> Optional[TranscriptMessage]:
    """Parse one raw JSONL line, or return None when it does not classify."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    stripped = line.strip()
    if not stripped:
        return None
    try:
        entry = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return parse_entry(entry)


def parse_lines(lines: Iterable[str | bytes]) -> list[TranscriptMessage]:
    messages: list[TranscriptMessage] = []
    for line in lines:
        message = parse_line(line)
        if message is not None:
            messages.append(message)
    return messages
