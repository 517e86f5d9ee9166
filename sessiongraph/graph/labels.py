"""Label and detail formatting for graph nodes."""
from __future__ import annotations

import json
from typing import Any

ELLIPSIS = "…"


def format_tokens(n: int) -> str:
    if n >= 1_000_000:
        return f"{n / 1_000_000:.1f}M"
    if n >= 1_000:
        return f"{n / 1_000:.1f}k"
    return str(n)


def truncate(text: str, limit: int) -> str:
    return text[:limit] + ELLIPSIS if len(text) > limit else text


def _input_field(tool_input: Any, key: str) -> str:
    if not isinstance(tool_input, dict):
        return ""
    value = tool_input.get(key)
    if value is None:
        return ""
    return str(value)


def format_tool_label(tool_name: str, tool_input: Any) -> str:
    name = tool_name or "tool"
    if name == "Bash":
        command = _input_field(tool_input, "command")
        return f"Bash: {truncate(command, 100)}" if command else name
    if name in ("Read", "Edit", "Write", "MultiEdit", "NotebookEdit"):
        file_path = _input_field(tool_input, "file_path") or _input_field(tool_input, "notebook_path")
        return f"{name}: {file_path}" if file_path else name
    if name in ("Grep", "Glob"):
        pattern = _input_field(tool_input, "pattern")
        return f"{name}: {truncate(pattern, 80)}" if pattern else name
    if name in ("Task", "Agent"):
        summary = _input_field(tool_input, "description") or _input_field(tool_input, "prompt")
        return f"{name}: {truncate(summary, 80)}" if summary else name
    if name in ("WebFetch", "WebSearch"):
        target = _input_field(tool_input, "url") or _input_field(tool_input, "query")
        return f"{name}: {truncate(target, 80)}" if target else name
    return name


def format_tool_detail(tool_input: Any) -> str:
    if tool_input is None:
        return ""
    try:
        return json.dumps(tool_input, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(tool_input)


def format_compaction(trigger: str, pre_tokens: int) -> tuple[str, str]:
    label = f"Compacted ({format_tokens(pre_tokens)} tokens)"
    detail = f"Trigger: {trigger or 'unknown'}\nPre-compaction tokens: {pre_tokens:,}"
    return label, detail


def format_system(subtype: str, content: str, duration_ms: int | None) -> tuple[str, str]:
    label = f"System: {subtype}" if subtype else "System"
    parts: list[str] = []
    if content:
        parts.append(content)
    if duration_ms:
        parts.append(f"Duration: {duration_ms / 1000:.1f}s")
    return label, "\n".join(parts)
