"""Live session state: one tailed transcript and everything derived from it.

``SessionView`` holds the message list of one transcript and recomputes the
graph, activity and usage from it on every change; a failed rebuild keeps
the last good graph. ``SessionMonitor`` owns the single active tailer and
switches targets without overlap, discarding results of superseded requests
via a request generation counter.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Sequence

from sessiongraph import config
from sessiongraph.activity import infer_activity
from sessiongraph.graph import build_session_graph
from sessiongraph.layout import LayoutCache, compute_layout
from sessiongraph.liveness import detect_end_reason
from sessiongraph.models import (
    ActivitySnapshot,
    LayoutResult,
    SessionGraph,
    TokenStats,
    TranscriptMessage,
)
from sessiongraph.tailer import SessionTailer
from sessiongraph.usage import PriceTable, compute_token_stats, load_price_table

logger = logging.getLogger("sessiongraph.session")


class SessionView:
    """Derived state for one transcript."""

    def __init__(
        self,
        end_reason: Optional[str] = None,
        max_turns: Optional[int] = None,
        price_table: Optional[PriceTable] = None,
    ):
        self.end_reason = end_reason
        self.max_turns = config.MAX_USER_TURNS if max_turns is None else max_turns
        self.price_table = price_table or PriceTable()
        self.messages: list[TranscriptMessage] = []
        self.graph = SessionGraph()
        self.new_node_ids: set[str] = set()
        self.token_stats = TokenStats()
        self.layout_cache = LayoutCache()
        self.build_failures = 0

    def _window(self) -> Optional[int]:
        # Only live sessions are windowed; finished ones are shown whole.
        return self.max_turns if self.end_reason == "active" else None

    def _rebuild(self, messages: Sequence[TranscriptMessage]) -> Optional[SessionGraph]:
        try:
            return build_session_graph(messages, self.end_reason, self._window())
        except Exception:
            self.build_failures += 1
            logger.exception("Graph build failed; keeping the previous graph")
            return None

    def load(self, messages: Sequence[TranscriptMessage]) -> bool:
        """Replace the message list (initial read or a truncation reset)."""
        self.messages = list(messages)
        self.token_stats = compute_token_stats(self.messages, self.price_table)
        graph = self._rebuild(self.messages)
        if graph is None:
            return False
        self.graph = graph
        self.new_node_ids = set()
        self.layout_cache.clear()
        return True

    def append(self, messages: Sequence[TranscriptMessage]) -> bool:
        """Add a batch of newly tailed messages and flag the nodes it introduced."""
        if not messages:
            return True
        self.messages.extend(messages)
        self.token_stats = compute_token_stats(self.messages, self.price_table)
        graph = self._rebuild(self.messages)
        if graph is None:
            return False

        previous_ids = {node.id for node in self.graph.nodes}
        self.new_node_ids = {node.id for node in graph.nodes if node.id not in previous_ids}
        for node in graph.nodes:
            node.isNew = node.id in self.new_node_ids
        self.graph = graph
        return True

    def set_end_reason(self, end_reason: Optional[str]) -> bool:
        if end_reason == self.end_reason:
            return False
        self.end_reason = end_reason
        graph = self._rebuild(self.messages)
        if graph is not None:
            self.graph = graph
        return True

    def clear_new_nodes(self) -> None:
        for node in self.graph.nodes:
            node.isNew = False
        self.new_node_ids = set()

    def activity(self, now: Optional[datetime] = None) -> ActivitySnapshot:
        return infer_activity(self.messages, live=self.end_reason == "active", now=now)

    def layout(self, expanded_node_id: Optional[str] = None, force: bool = False) -> LayoutResult:
        return compute_layout(
            self.graph.nodes,
            self.graph.edges,
            self.layout_cache,
            expanded_node_id=expanded_node_id,
            force=force,
        )


TailerFactory = Callable[..., SessionTailer]


class SessionMonitor:
    """Watches exactly one transcript at a time."""

    def __init__(
        self,
        tailer_factory: TailerFactory = SessionTailer,
        retry_delay: Optional[float] = None,
        price_table: Optional[PriceTable] = None,
    ):
        self._tailer_factory = tailer_factory
        self.retry_delay = config.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.price_table = price_table or load_price_table()
        self.view: Optional[SessionView] = None
        self.path: Optional[Path] = None
        self.session_id = ""
        self.claude_dir: Optional[Path] = None
        self.last_error: Optional[str] = None
        self._tailer: Optional[SessionTailer] = None
        self._generation = 0
        self._switch_lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_watching(self) -> bool:
        return self._tailer is not None

    def _make_tailer(self, generation: int, view: SessionView) -> SessionTailer:
        def on_messages(batch: list[TranscriptMessage]) -> None:
            if generation == self._generation:
                view.append(batch)

        def on_reset(batch: list[TranscriptMessage]) -> None:
            if generation == self._generation:
                logger.info(f"Transcript {self.path} was reset; reloading {len(batch)} messages")
                view.load(batch)

        def on_error(exc: Exception) -> None:
            if generation == self._generation:
                self.last_error = str(exc)

        return self._tailer_factory(on_messages=on_messages, on_reset=on_reset, on_error=on_error)

    async def _stop_tailer(self) -> None:
        if self._tailer is not None:
            await self._tailer.stop()
            self._tailer = None

    async def watch(
        self,
        path: Path | str,
        session_id: str = "",
        claude_dir: Optional[Path] = None,
        max_turns: Optional[int] = None,
    ) -> Optional[SessionView]:
        """Switch to ``path``; returns None when a newer request superseded this one."""
        self._generation += 1
        generation = self._generation
        file_path = Path(path)
        end_reason = detect_end_reason(file_path, session_id, claude_dir)
        view = SessionView(end_reason=end_reason, max_turns=max_turns, price_table=self.price_table)

        async with self._switch_lock:
            if generation != self._generation:
                return None
            await self._stop_tailer()
            tailer = self._make_tailer(generation, view)
            self._tailer = tailer
            self.view = view
            self.path = file_path
            self.session_id = session_id or file_path.stem
            self.claude_dir = claude_dir
            self.last_error = None
            messages = await tailer.start(file_path)

        if not messages:
            # The file may be briefly locked or mid-rotation; try once more.
            await asyncio.sleep(self.retry_delay)
            async with self._switch_lock:
                if generation != self._generation:
                    return None
                messages = await tailer.start(file_path)

        if generation != self._generation:
            return None
        view.load(messages)
        logger.info(f"Watching {file_path} ({len(messages)} messages, {end_reason})")
        return view

    async def stop(self) -> None:
        self._generation += 1
        async with self._switch_lock:
            await self._stop_tailer()
            self.view = None
            self.path = None

    def refresh_liveness(self) -> Optional[str]:
        """Re-evaluate the liveness hint and rebuild if it changed."""
        if self.view is None or self.path is None:
            return None
        end_reason = detect_end_reason(self.path, self.session_id, self.claude_dir)
        if self.view.set_end_reason(end_reason):
            logger.info(f"Session {self.session_id} is now {end_reason}")
        return end_reason
