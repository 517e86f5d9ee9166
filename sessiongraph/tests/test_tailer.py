import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from watchfiles import Change

from sessiongraph import tailer as tailer_module
from sessiongraph.tailer import LogTail, SessionTailer


def _line(uuid: str, text: str = "hello", parent: str | None = None) -> bytes:
    entry = {
        "type": "user",
        "uuid": uuid,
        "parentUuid": parent,
        "timestamp": "2026-02-16T10:00:00Z",
        "message": {"role": "user", "content": text},
    }
    return (json.dumps(entry, ensure_ascii=False) + "\n").encode("utf-8")


class _TempLogMixin:
    def _log_path(self) -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)  # type: ignore[attr-defined]
        return Path(tmpdir.name) / "session.jsonl"

    @staticmethod
    def _append(path: Path, data: bytes) -> None:
        with path.open("ab") as handle:
            handle.write(data)


class LogTailTests(_TempLogMixin, unittest.TestCase):
    def test_open_reads_existing_content_and_records_offset(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1") + _line("u2"))
        tail = LogTail(path)
        self.addCleanup(tail.close)

        messages = tail.open()

        self.assertEqual([m.uuid for m in messages], ["u1", "u2"])
        self.assertEqual(tail.offset, path.stat().st_size)

    def test_read_new_returns_only_appended_messages(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1"))
        tail = LogTail(path)
        self.addCleanup(tail.close)
        tail.open()

        self._append(path, _line("u2") + _line("u3"))
        batch = tail.read_new()

        self.assertFalse(batch.reset)
        self.assertEqual([m.uuid for m in batch.messages], ["u2", "u3"])
        self.assertEqual(tail.read_new().messages, [])

    def test_partial_line_is_buffered_until_newline(self) -> None:
        path = self._log_path()
        path.write_bytes(b"")
        tail = LogTail(path)
        self.addCleanup(tail.close)
        tail.open()

        data = _line("u1")
        self._append(path, data[:15])
        self.assertEqual(tail.read_new().messages, [])
        self.assertEqual(tail.partial, data[:15])

        self._append(path, data[15:])
        batch = tail.read_new()
        self.assertEqual([m.uuid for m in batch.messages], ["u1"])
        self.assertEqual(tail.partial, b"")

    def test_split_points_do_not_change_parsed_messages(self) -> None:
        content = _line("u1", "héllo ✓ wörld") + b"not json\n" + _line("u2", "两个") + _line("u3")
        expected = ["u1", "u2", "u3"]
        multibyte_split = content.index("✓".encode("utf-8")) + 1
        split_points = [0, 1, 7, multibyte_split, len(_line("u1", "héllo ✓ wörld")) - 1,
                        len(_line("u1", "héllo ✓ wörld")), len(content) - 3, len(content)]

        for split in split_points:
            with self.subTest(split=split):
                path = self._log_path()
                path.write_bytes(content[:split])
                tail = LogTail(path)
                self.addCleanup(tail.close)

                seen = [m.uuid for m in tail.open()]
                rest = content[split:]
                # Feed the remainder in uneven chunks.
                for start in range(0, len(rest), 11):
                    self._append(path, rest[start:start + 11])
                    seen.extend(m.uuid for m in tail.read_new().messages)

                self.assertEqual(seen, expected)

    def test_glued_objects_are_dropped_wherever_the_read_splits(self) -> None:
        first = _line("a").rstrip(b"\n")
        content = first + b" " + _line("b") + _line("c")

        for split in (0, len(first), len(first) + 1, len(content)):
            with self.subTest(split=split):
                path = self._log_path()
                path.write_bytes(content[:split])
                tail = LogTail(path)
                self.addCleanup(tail.close)

                seen = [m.uuid for m in tail.open()]
                self._append(path, content[split:])
                seen.extend(m.uuid for m in tail.read_new().messages)

                self.assertEqual(seen, ["c"])

    def test_line_without_newline_waits_for_it(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1").rstrip(b"\n"))
        tail = LogTail(path)
        self.addCleanup(tail.close)

        self.assertEqual(tail.open(), [])

        self._append(path, b"\n" + _line("u2"))
        self.assertEqual([m.uuid for m in tail.read_new().messages], ["u1", "u2"])

    def test_truncated_file_is_reread_from_start(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1") + _line("u2") + _line("u3"))
        tail = LogTail(path)
        self.addCleanup(tail.close)
        tail.open()

        path.write_bytes(_line("x1"))
        batch = tail.read_new()

        self.assertTrue(batch.reset)
        self.assertEqual([m.uuid for m in batch.messages], ["x1"])
        self.assertEqual(tail.offset, len(_line("x1")))

    def test_close_resets_offset_and_buffer(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1") + b'{"type": "us')
        tail = LogTail(path)
        tail.open()
        self.assertGreater(tail.offset, 0)
        self.assertNotEqual(tail.partial, b"")

        tail.close()

        self.assertEqual(tail.offset, 0)
        self.assertEqual(tail.partial, b"")
        self.assertFalse(tail.is_open)

    def test_read_new_raises_for_missing_file(self) -> None:
        tail = LogTail(self._log_path())

        with self.assertRaises(OSError):
            tail.read_new()


class SessionTailerTests(_TempLogMixin, unittest.IsolatedAsyncioTestCase):
    async def test_start_delivers_appended_batches(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1"))
        received: list[list[str]] = []
        watch_kwargs: dict = {}

        async def fake_awatch(*paths, **kwargs):
            watch_kwargs.update(kwargs)
            yield {(Change.modified, str(path.parent / "other.jsonl"))}
            yield {(Change.modified, str(path))}

        tailer = SessionTailer(on_messages=lambda batch: received.append([m.uuid for m in batch]))
        with patch.object(tailer_module, "awatch", fake_awatch):
            initial = await tailer.start(path)
            self._append(path, _line("u2"))
            assert tailer._task is not None
            await asyncio.wait_for(tailer._task, timeout=1)
        await tailer.stop()

        self.assertEqual([m.uuid for m in initial], ["u1"])
        self.assertEqual(received, [["u2"]])
        self.assertTrue(watch_kwargs["force_polling"])
        self.assertFalse(watch_kwargs["recursive"])
        self.assertTrue(watch_kwargs["yield_on_timeout"])

    async def test_timeout_picks_up_bytes_written_right_after_start(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1"))
        received: list[list[str]] = []

        async def quiet_awatch(*paths, **kwargs):
            # No change event ever fires; only the timeout yields.
            yield set()

        tailer = SessionTailer(on_messages=lambda batch: received.append([m.uuid for m in batch]))
        with patch.object(tailer_module, "awatch", quiet_awatch):
            await tailer.start(path)
            self._append(path, _line("u2"))
            assert tailer._task is not None
            await asyncio.wait_for(tailer._task, timeout=1)
        await tailer.stop()

        self.assertEqual(received, [["u2"]])

    def test_explicit_zero_intervals_are_kept(self) -> None:
        tailer = SessionTailer(poll_interval_ms=0, stability_ms=0, debounce_ms=0, catchup_ms=0)

        self.assertEqual(
            (tailer.poll_interval_ms, tailer.stability_ms, tailer.debounce_ms, tailer.catchup_ms),
            (0, 0, 0, 0),
        )

    async def test_reset_batches_go_to_on_reset(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1") + _line("u2"))
        appended: list = []
        resets: list[list[str]] = []
        tailer = SessionTailer(
            on_messages=appended.append,
            on_reset=lambda batch: resets.append([m.uuid for m in batch]),
        )

        async def idle_awatch(*paths, **kwargs):
            await kwargs["stop_event"].wait()
            return
            yield  # pragma: no cover

        with patch.object(tailer_module, "awatch", idle_awatch):
            await tailer.start(path)
            path.write_bytes(_line("x1"))
            tailer.handle_change()
            await tailer.stop()

        self.assertEqual(appended, [])
        self.assertEqual(resets, [["x1"]])

    async def test_stop_releases_file_and_resets_offset(self) -> None:
        path = self._log_path()
        path.write_bytes(_line("u1"))

        async def idle_awatch(*paths, **kwargs):
            await kwargs["stop_event"].wait()
            return
            yield  # pragma: no cover

        tailer = SessionTailer()
        with patch.object(tailer_module, "awatch", idle_awatch):
            await tailer.start(path)
            self.assertTrue(tailer.is_running)
            self.assertGreater(tailer.offset, 0)
            await tailer.stop()

        self.assertFalse(tailer.is_running)
        self.assertEqual(tailer.offset, 0)

    async def test_missing_file_reports_error_instead_of_raising(self) -> None:
        path = self._log_path()
        errors: list[Exception] = []

        async def idle_awatch(*paths, **kwargs):
            await kwargs["stop_event"].wait()
            return
            yield  # pragma: no cover

        tailer = SessionTailer(on_error=errors.append)
        with patch.object(tailer_module, "awatch", idle_awatch):
            messages = await tailer.start(path)
            tailer.handle_change()
            await tailer.stop()

        self.assertEqual(messages, [])
        self.assertEqual(len(errors), 2)
        self.assertTrue(all(isinstance(exc, OSError) for exc in errors))

    async def test_failing_callback_does_not_break_tailing(self) -> None:
        path = self._log_path()
        path.write_bytes(b"")

        def explode(batch):
            raise RuntimeError("consumer bug")

        async def idle_awatch(*paths, **kwargs):
            await kwargs["stop_event"].wait()
            return
            yield  # pragma: no cover

        tailer = SessionTailer(on_messages=explode)
        with patch.object(tailer_module, "awatch", idle_awatch):
            await tailer.start(path)
            self._append(path, _line("u1"))
            tailer.handle_change()
            self._append(path, _line("u2"))
            tailer.handle_change()
            offset = tailer.offset
            await tailer.stop()

        self.assertEqual(offset, len(_line("u1")) + len(_line("u2")))


if __name__ == "__main__":
    unittest.main()
