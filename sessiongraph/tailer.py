"""Tail an append-only JSONL transcript and emit newly written messages.

``LogTail`` is the byte-exact reader: it owns one open file handle, tracks a
byte offset and buffers a partial trailing line between reads.
``SessionTailer`` drives a ``LogTail`` from a ``watchfiles`` polling loop
(native OS notifications are unreliable on network-mapped and
cross-environment filesystems) and hands each batch to callbacks.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from watchfiles import Change, awatch

from sessiongraph import config
from sessiongraph.models import TranscriptMessage
from sessiongraph.parsers.messages import parse_lines

logger = logging.getLogger("sessiongraph.tailer")

MessagesCallback = Callable[[list[TranscriptMessage]], None]
ErrorCallback = Callable[[Exception], None]


@dataclass
class TailBatch:
    messages: list[TranscriptMessage] = field(default_factory=list)
    # True when the file shrank or was replaced and was re-read from byte 0.
    reset: bool = False


class LogTail:
    """Byte-offset reader for a single JSONL file.

    Attributes:
        path: File being tailed.
        offset: Number of bytes consumed so far.
        partial: Bytes of an incomplete trailing line, held until its newline
            arrives.
    """

    def __init__(self, path: Path | str | None = None):
        self.path: Optional[Path] = Path(path) if path is not None else None
        self.offset = 0
        self.partial = b""
        self._handle: Optional[BinaryIO] = None
        self._inode: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def open(self, path: Path | str | None = None) -> list[TranscriptMessage]:
        """Read the whole file from scratch and return every parsed message."""
        if path is not None:
            self.path = Path(path)
        if self.path is None:
            raise ValueError("LogTail.open() needs a path")
        self.close()
        self._open_handle()
        assert self._handle is not None
        data = self._handle.read()
        self.offset = len(data)
        return self._consume(data)

    def read_new(self) -> TailBatch:
        """Read bytes appended since the last call.

        Raises OSError when the file cannot be stat'ed or read; callers decide
        how to report it.
        """
        if self.path is None:
            return TailBatch()
        if self._handle is None:
            # The initial open failed (e.g. the file did not exist yet).
            return TailBatch(messages=self.open())

        stat = os.stat(self.path)
        if stat.st_size < self.offset or (self._inode is not None and stat.st_ino != self._inode):
            logger.warning(
                f"{self.path} was truncated or replaced (size {stat.st_size} < offset {self.offset}); re-reading"
            )
            return TailBatch(messages=self.open(), reset=True)

        delta = stat.st_size - self.offset
        if delta <= 0:
            return TailBatch()

        self._handle.seek(self.offset)
        data = self._handle.read(delta)
        # Only advance by what was actually read; a short read is picked up next time.
        self.offset += len(data)
        return TailBatch(messages=self._consume(data))

    def close(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            except OSError as exc:
                logger.debug(f"Error closing {self.path}: {exc}")
        self._handle = None
        self._inode = None
        self.offset = 0
        self.partial = b""

    def _open_handle(self) -> None:
        assert self.path is not None
        self._handle = self.path.open("rb")
        self._inode = os.fstat(self._handle.fileno()).st_ino

    def _consume(self, data: bytes) -> list[TranscriptMessage]:
        lines = (self.partial + data).split(b"\n")
        # The last segment is only parsed once its newline arrives, wherever the read split it.
        self.partial = lines.pop()
        return parse_lines(lines)


class SessionTailer:
    """Watch one transcript file and deliver appended messages.

    Only one file is watched per instance. ``stop()`` releases the handle and
    resets the offset, so a later ``start()`` re-reads from scratch.
    """

    def __init__(
        self,
        on_messages: Optional[MessagesCallback] = None,
        on_reset: Optional[MessagesCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        poll_interval_ms: Optional[int] = None,
        stability_ms: Optional[int] = None,
        debounce_ms: Optional[int] = None,
        catchup_ms: Optional[int] = None,
    ):
        self.on_messages = on_messages
        self.on_reset = on_reset
        self.on_error = on_error
        self.poll_interval_ms = config.POLL_INTERVAL_MS if poll_interval_ms is None else poll_interval_ms
        self.stability_ms = config.WRITE_STABILITY_MS if stability_ms is None else stability_ms
        self.debounce_ms = config.DEBOUNCE_MS if debounce_ms is None else debounce_ms
        self.catchup_ms = config.CATCHUP_INTERVAL_MS if catchup_ms is None else catchup_ms
        self._tail = LogTail()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._resolved: Optional[Path] = None

    @property
    def path(self) -> Optional[Path]:
        return self._tail.path

    @property
    def offset(self) -> int:
        return self._tail.offset

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, path: Path | str) -> list[TranscriptMessage]:
        """Read the current file contents, then begin polling for appends."""
        if self.is_running or self._tail.is_open:
            await self.stop()

        file_path = Path(path)
        self._resolved = file_path.resolve()
        try:
            messages = self._tail.open(file_path)
        except OSError as exc:
            logger.error(f"Initial read of {file_path} failed: {exc}")
            self._report_error(exc)
            messages = []

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(file_path.parent))
        logger.info(f"Tailing {file_path} from offset {self._tail.offset} ({len(messages)} messages)")
        return messages

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._stop_event = None
        path = self._tail.path
        self._tail.close()
        if path is not None:
            logger.info(f"Stopped tailing {path}")

    def handle_change(self) -> None:
        """Read and dispatch whatever was appended since the last read."""
        try:
            batch = self._tail.read_new()
        except OSError as exc:
            logger.warning(f"Read of {self._tail.path} failed: {exc}")
            self._report_error(exc)
            return

        if batch.reset:
            self._dispatch(self.on_reset, batch.messages)
        elif batch.messages:
            self._dispatch(self.on_messages, batch.messages)

    async def _watch_loop(self, directory: Path) -> None:
        try:
            async for changes in awatch(
                directory,
                stop_event=self._stop_event,
                force_polling=True,
                poll_delay_ms=self.poll_interval_ms,
                step=self.stability_ms,
                debounce=self.debounce_ms,
                recursive=False,
                yield_on_timeout=True,
                rust_timeout=self.catchup_ms,
            ):
                # Empty sets arrive on timeout; they also pick up bytes written
                # between the initial read and the first polling snapshot.
                if not changes or self._is_relevant(changes):
                    self.handle_change()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Watcher for {self._tail.path} failed: {exc}")
            self._report_error(exc)

    def _is_relevant(self, changes: set[tuple[Change, str]]) -> bool:
        for _change_type, path_str in changes:
            try:
                if Path(path_str).resolve() == self._resolved:
                    return True
            except OSError:
                continue
        return False

    def _dispatch(self, callback: Optional[MessagesCallback], messages: list[TranscriptMessage]) -> None:
        if callback is None:
            return
        try:
            callback(messages)
        except Exception:
            logger.exception("Message callback failed")

    def _report_error(self, exc: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception:
            logger.exception("Error callback failed")
