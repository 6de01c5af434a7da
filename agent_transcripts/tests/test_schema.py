import unittest
from datetime import datetime, timezone

from pydantic import ValidationError

from agent_transcripts.models import AgentMessage, ToolCallMessage, UserMessage
from agent_transcripts.schema import (
    TranscriptSchemaError,
    assemble_transcript,
    order_messages,
    transcript_to_json,
    validate_transcript,
)
from agent_transcripts.transcript_stats import calculate_transcript_stats


class TranscriptStatsTests(unittest.TestCase):
    def test_counts_files_and_diff_lines(self) -> None:
        messages = [
            UserMessage(text="change things"),
            ToolCallMessage(id="w", toolName="Write", input={"file_path": "./a.py", "content": "x = 1\ny = 2"}),
            ToolCallMessage(id="e", toolName="Edit", input={"file_path": "./b.py", "diff": "@@\n-x\n+y\n+z\n"}),
            ToolCallMessage(
                id="bad",
                toolName="Edit",
                input={"file_path": "./c.py", "diff": "+never\n"},
                isError=True,
            ),
            ToolCallMessage(id="r", toolName="Read", input={"file_path": "./d.py"}),
        ]
        self.assertEqual(
            calculate_transcript_stats(messages),
            {
                "toolCount": 4,
                "userMessageCount": 1,
                "filesChanged": 2,
                "linesAdded": 3,
                "linesRemoved": 0,
                "linesModified": 1,
            },
        )

    def test_edit_diff_may_live_in_output(self) -> None:
        message = ToolCallMessage(id="e", toolName="Edit", input={"file_path": "./b.py"}, output={"diff": "-a\n-b\n+c\n"})
        stats = calculate_transcript_stats([message])
        self.assertEqual((stats["linesAdded"], stats["linesRemoved"], stats["linesModified"]), (0, 1, 1))


class OrderMessagesTests(unittest.TestCase):
    def test_out_of_order_messages_are_sorted_stably(self) -> None:
        late = AgentMessage(text="late", timestamp="2026-01-01T10:00:05Z")
        early = UserMessage(text="early", timestamp="2026-01-01T10:00:01Z")
        follower = AgentMessage(text="follows late")
        ordered = order_messages([late, follower, early])
        self.assertEqual([message.text for message in ordered], ["early", "late", "follows late"])

    def test_ordered_input_is_kept(self) -> None:
        first = UserMessage(text="a", timestamp="2026-01-01T10:00:01Z")
        second = AgentMessage(text="b", timestamp="2026-01-01T10:00:01Z")
        self.assertEqual(order_messages([first, second]), [first, second])


class SchemaValidationTests(unittest.TestCase):
    def test_assemble_adds_counters(self) -> None:
        transcript = assemble_transcript(
            [UserMessage(text="hi"), AgentMessage(text="hello")],
            id="t1",
            source="codex",
            timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        self.assertEqual(transcript.messageCount, 2)
        self.assertEqual(transcript.userMessageCount, 1)
        payload = transcript_to_json(transcript)
        self.assertEqual(payload["v"], 1)
        self.assertEqual(payload["messages"][0], {"type": "user", "text": "hi"})
        self.assertNotIn("preview", payload)

    def test_invalid_transcript_raises_schema_error(self) -> None:
        with self.assertRaises(TranscriptSchemaError) as ctx:
            validate_transcript({"id": "t1", "source": "gemini", "timestamp": "2026-01-01T00:00:00Z"})
        self.assertIsInstance(ctx.exception.__cause__, ValidationError)

    def test_unknown_message_type_is_rejected(self) -> None:
        with self.assertRaises(TranscriptSchemaError):
            validate_transcript(
                {
                    "id": "t1",
                    "timestamp": "2026-01-01T00:00:00Z",
                    "messages": [{"type": "telepathy", "text": "?"}],
                }
            )

    def test_git_context_rejects_unknown_fields(self) -> None:
        with self.assertRaises(TranscriptSchemaError):
            validate_transcript(
                {"id": "t1", "timestamp": "2026-01-01T00:00:00Z", "git": {"repo": "x", "sha": "abc"}}
            )


if __name__ == "__main__":
    unittest.main()
