import json
import unittest

from sessiongraph.models import (
    AssistantMessage,
    ProgressMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UnknownBlock,
    UserMessage,
)
from sessiongraph.parsers.messages import parse_entry, parse_line, parse_lines


class MessageParserTests(unittest.TestCase):
    def test_user_string_content(self) -> None:
        message = parse_line(json.dumps({
            "type": "user",
            "uuid": "u1",
            "parentUuid": None,
            "sessionId": "s1",
            "timestamp": "2026-02-16T10:00:00Z",
            "cwd": "/tmp/project",
            "message": {"role": "user", "content": "Fix the bug"},
        }))

        self.assertIsInstance(message, UserMessage)
        assert isinstance(message, UserMessage)
        self.assertEqual(message.uuid, "u1")
        self.assertIsNone(message.parentUuid)
        self.assertEqual(message.message.content, "Fix the bug")
        self.assertFalse(message.isMeta)

    def test_assistant_blocks_keep_their_indices(self) -> None:
        message = parse_entry({
            "type": "assistant",
            "uuid": "a1",
            "parentUuid": "u1",
            "timestamp": "2026-02-16T10:00:01Z",
            "message": {
                "id": "msg_1",
                "model": "claude-sonnet-4-5",
                "content": [
                    {"type": "thinking", "thinking": "Let me look", "signature": "abc"},
                    {"type": "image", "source": {}},
                    {"type": "text", "text": "Found it"},
                    {"type": "tool_use", "id": "toolu_1", "name": "Edit", "input": {"file_path": "/a.py"}},
                ],
                "usage": {"input_tokens": 10, "output_tokens": "20"},
            },
        })

        self.assertIsInstance(message, AssistantMessage)
        assert isinstance(message, AssistantMessage)
        blocks = message.message.content
        self.assertIsInstance(blocks[0], ThinkingBlock)
        self.assertIsInstance(blocks[1], UnknownBlock)
        self.assertEqual(blocks[1].type, "image")
        self.assertIsInstance(blocks[2], TextBlock)
        self.assertIsInstance(blocks[3], ToolUseBlock)
        self.assertEqual(blocks[3].name, "Edit")
        assert message.message.usage is not None
        self.assertEqual(message.message.usage.output_tokens, 20)
        self.assertEqual(message.message.usage.cache_read_input_tokens, 0)

    def test_malformed_block_becomes_unknown(self) -> None:
        message = parse_entry({
            "type": "assistant",
            "uuid": "a1",
            "message": {
                "content": [
                    {"type": "tool_use", "id": "toolu_1", "name": 5},
                    "plain string block",
                ],
            },
        })

        assert isinstance(message, AssistantMessage)
        self.assertIsInstance(message.message.content[0], UnknownBlock)
        self.assertIsInstance(message.message.content[1], TextBlock)
        self.assertEqual(message.message.content[1].text, "plain string block")

    def test_tool_result_content_is_kept_raw(self) -> None:
        message = parse_entry({
            "type": "user",
            "uuid": "r1",
            "parentUuid": "a1",
            "message": {
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": "toolu_1",
                        "content": [{"type": "text", "text": "ok"}],
                    }
                ],
            },
        })

        assert isinstance(message, UserMessage)
        block = message.message.content[0]
        self.assertIsInstance(block, ToolResultBlock)
        self.assertEqual(block.tool_use_id, "toolu_1")
        self.assertEqual(block.content, [{"type": "text", "text": "ok"}])

    def test_system_compaction_metadata(self) -> None:
        message = parse_entry({
            "type": "system",
            "subtype": "compact_boundary",
            "uuid": "c1",
            "parentUuid": None,
            "logicalParentUuid": "a9",
            "content": "Conversation compacted",
            "compactMetadata": {"trigger": "auto", "preTokens": "155000"},
        })

        assert isinstance(message, SystemMessage)
        self.assertEqual(message.logicalParentUuid, "a9")
        assert message.compactMetadata is not None
        self.assertEqual(message.compactMetadata.trigger, "auto")
        self.assertEqual(message.compactMetadata.preTokens, 155000)

    def test_progress_entries_may_omit_uuid(self) -> None:
        message = parse_entry({"type": "progress", "data": {"type": "hook_progress"}, "toolUseID": "toolu_1"})

        self.assertIsInstance(message, ProgressMessage)
        assert isinstance(message, ProgressMessage)
        self.assertEqual(message.uuid, "")
        self.assertEqual(message.toolUseID, "toolu_1")

    def test_unclassifiable_entries_are_dropped(self) -> None:
        self.assertIsNone(parse_line(""))
        self.assertIsNone(parse_line("   "))
        self.assertIsNone(parse_line("{not json"))
        self.assertIsNone(parse_line("[1, 2, 3]"))
        self.assertIsNone(parse_line(json.dumps({"type": "summary", "summary": "x", "leafUuid": "u1"})))
        self.assertIsNone(parse_line(json.dumps({"type": "file-history-snapshot", "messageId": "m"})))
        self.assertIsNone(parse_line(json.dumps({"type": "user", "message": {"content": "no uuid"}})))
        self.assertIsNone(parse_line(json.dumps({"type": "assistant", "uuid": 42, "message": {}})))

    def test_bad_field_types_are_sanitized(self) -> None:
        message = parse_entry({
            "type": "user",
            "uuid": "u1",
            "parentUuid": 17,
            "timestamp": 1700000000,
            "isMeta": "yes",
            "message": {"content": {"unexpected": "shape"}},
        })

        assert isinstance(message, UserMessage)
        self.assertIsNone(message.parentUuid)
        self.assertEqual(message.timestamp, "")
        self.assertFalse(message.isMeta)
        self.assertIsNone(message.message.content)

    def test_bytes_are_decoded_as_utf8(self) -> None:
        line = json.dumps({"type": "user", "uuid": "u1", "message": {"content": "héllo ✓"}}, ensure_ascii=False)
        message = parse_line(line.encode("utf-8"))

        assert isinstance(message, UserMessage)
        self.assertEqual(message.message.content, "héllo ✓")

    def test_parse_lines_skips_garbage_between_valid_lines(self) -> None:
        lines = [
            json.dumps({"type": "user", "uuid": "u1", "message": {"content": "one"}}),
            "garbage",
            json.dumps({"type": "queue-operation", "operation": "enqueue"}),
            json.dumps({"type": "user", "uuid": "u2", "message": {"content": "two"}}),
        ]

        messages = parse_lines(lines)

        self.assertEqual([m.uuid for m in messages], ["u1", "u2"])


if __name__ == "__main__":
    unittest.main()
