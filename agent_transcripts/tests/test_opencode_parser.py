import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from agent_transcripts.models import GitContext, TokenUsage
from agent_transcripts.parsers.context import ConvertOptions
from agent_transcripts.parsers.platforms.opencode.parser import (
    convert_opencode_file,
    convert_opencode_transcript,
    derive_opencode_preview,
    model_identifier,
    normalize_tool_name,
    sanitize_tool_input,
    sanitize_tool_output,
)
from agent_transcripts.pricing import load_pricing_table

CREATED_MS = 1760000000000


def _export(cost: float = 0.25) -> dict:
    user = {
        "info": {"id": "msg_u", "role": "user", "time": {"created": CREATED_MS + 1000}},
        "parts": [{"type": "text", "text": '"Fix the bug"'}],
    }
    assistant = {
        "info": {
            "id": "msg_a",
            "role": "assistant",
            "time": {"created": CREATED_MS + 2000},
            "providerID": "anthropic",
            "modelID": "claude-sonnet-4",
            "tokens": {"input": 100, "output": 50, "reasoning": 10, "cache": {"read": 40, "write": 0}},
            "cost": cost,
            "path": {"root": "/work/proj", "cwd": "/work/proj/pkg"},
        },
        "parts": [
            {"type": "step-start"},
            {"type": "reasoning", "text": "Looking at the module"},
            {"type": "text", "text": "Reading the file first."},
            {
                "type": "tool",
                "tool": "read",
                "callID": "c1",
                "state": {
                    "status": "completed",
                    "input": {"filePath": "/work/proj/pkg/a.py"},
                    "output": "<file>\n00001| x = 1\n</file>",
                    "metadata": {"preview": "x = 1"},
                },
            },
            {
                "type": "tool",
                "tool": "bash",
                "callID": "c2",
                "state": {"status": "error", "input": {"command": "pytest"}, "error": "exit status 1"},
            },
            {"type": "step-finish"},
            {"type": "patch", "files": []},
            "garbage",
        ],
    }
    return {
        "info": {
            "id": "ses_1",
            "title": "Fix failing import",
            "version": "0.15.0",
            "directory": "/work/proj/pkg",
            "time": {"created": CREATED_MS},
        },
        # Exports are not guaranteed to be chronological.
        "messages": [assistant, user],
    }


class OpenCodeConverterTests(unittest.TestCase):
    def test_export_is_normalized(self) -> None:
        result = convert_opencode_transcript(_export())
        self.assertIsNotNone(result)
        assert result is not None
        transcript = result.transcript

        self.assertEqual(transcript.id, "ses_1")
        self.assertEqual(transcript.source, "opencode")
        self.assertEqual(transcript.summary, "Fix failing import")
        self.assertEqual(transcript.clientVersion, "0.15.0")
        self.assertEqual(transcript.preview, "Fix the bug")
        self.assertEqual(transcript.model, "anthropic/claude-sonnet-4")
        self.assertEqual(transcript.timestamp, datetime.fromtimestamp(CREATED_MS / 1000, timezone.utc))
        self.assertEqual(transcript.cwd, "/work/proj/pkg")
        self.assertEqual(transcript.git, GitContext(relativeCwd="pkg"))

        self.assertEqual(
            [message.type for message in transcript.messages],
            ["user", "thinking", "agent", "tool-call", "tool-call"],
        )
        user, _, agent, read, bash = transcript.messages
        self.assertEqual(user.id, "msg_u")
        self.assertTrue(user.timestamp.endswith("Z"))
        self.assertEqual(agent.model, "anthropic/claude-sonnet-4")

        self.assertEqual(read.toolName, "Read")
        self.assertEqual(read.input, {"file_path": "./a.py"})
        self.assertEqual(read.output, {"content": "x = 1"})
        self.assertFalse(read.isError)

        self.assertEqual(bash.toolName, "Bash")
        self.assertEqual(bash.input, {"command": "pytest"})
        self.assertTrue(bash.isError)
        self.assertEqual(bash.error, "exit status 1")

        self.assertEqual(
            transcript.tokenUsage,
            TokenUsage(
                inputTokens=100,
                cachedInputTokens=40,
                outputTokens=50,
                reasoningOutputTokens=10,
                totalTokens=150,
            ),
        )
        self.assertEqual(transcript.blendedTokens, 150)
        self.assertEqual(transcript.costUsd, 0.25)
        self.assertEqual(transcript.toolCount, 2)
        self.assertEqual(transcript.userMessageCount, 1)

    def test_missing_recorded_cost_is_estimated_without_cache_discount(self) -> None:
        pricing = load_pricing_table(
            {
                "anthropic/claude-sonnet-4": {
                    "input_cost_per_token": 1e-6,
                    "output_cost_per_token": 1e-5,
                    "cache_read_input_token_cost": 1e-7,
                }
            }
        )
        result = convert_opencode_transcript(_export(cost=0), ConvertOptions(pricing=pricing))
        assert result is not None
        self.assertAlmostEqual(result.transcript.costUsd, 100 * 1e-6 + 60 * 1e-5 + 40 * 1e-7)

    def test_options_override_session_fields(self) -> None:
        result = convert_opencode_transcript(
            _export(),
            ConvertOptions(git_context=GitContext(repo="github.com/acme/proj"), client_version="1.0", cwd="/work/proj"),
        )
        assert result is not None
        transcript = result.transcript
        self.assertEqual(transcript.git, GitContext(repo="github.com/acme/proj"))
        self.assertEqual(transcript.clientVersion, "1.0")
        self.assertEqual(transcript.messages[3].input, {"file_path": "./pkg/a.py"})

    def test_exports_without_messages_yield_none(self) -> None:
        self.assertIsNone(convert_opencode_transcript({"info": {"id": "ses_2"}, "messages": []}))
        self.assertIsNone(convert_opencode_transcript([]))
        self.assertIsNone(
            convert_opencode_transcript(
                {"messages": [{"info": {"role": "assistant"}, "parts": [{"type": "step-start"}]}]}
            )
        )


class OpenCodeHelperTests(unittest.TestCase):
    def test_tool_names(self) -> None:
        self.assertEqual(normalize_tool_name("bash"), "Bash")
        self.assertEqual(normalize_tool_name("Write"), "Write")
        self.assertEqual(normalize_tool_name("list_files"), "Glob")
        self.assertEqual(normalize_tool_name("webfetch"), "webfetch")
        self.assertEqual(normalize_tool_name(None), "unknown")

    def test_model_identifier_falls_back_to_nested_model(self) -> None:
        self.assertEqual(model_identifier({"providerID": "openai", "modelID": "gpt-5"}), "openai/gpt-5")
        self.assertEqual(
            model_identifier({"model": {"providerID": "anthropic", "modelID": "claude-opus-4"}}),
            "anthropic/claude-opus-4",
        )
        self.assertIsNone(model_identifier({}))

    def test_preview_skips_tagged_text(self) -> None:
        self.assertEqual(derive_opencode_preview(["<system>ctx</system>", "'hello'"]), "hello")
        self.assertEqual(derive_opencode_preview(["<only>"]), "<only>")
        self.assertIsNone(derive_opencode_preview([]))

    def test_input_paths_are_renamed_and_relativized(self) -> None:
        self.assertEqual(
            sanitize_tool_input({"filePath": "/w/src/a.py", "workdir": "/w", "other": 1}, "/w"),
            {"file_path": "./src/a.py", "workdir": ".", "other": 1},
        )
        self.assertEqual(sanitize_tool_input("raw", "/w"), "raw")

    def test_structured_outputs(self) -> None:
        self.assertEqual(
            sanitize_tool_output("Bash", "raw", {"output": "ok\n", "exit": 0, "description": "Run tests"}),
            {"stdout": "ok\n", "exitCode": 0, "description": "Run tests"},
        )
        self.assertEqual(
            sanitize_tool_output("Edit", "raw", {"diff": "-a\n+b\n", "filediff": {"additions": 1, "deletions": 1}}),
            {"diff": "-a\n+b\n", "additions": 1, "deletions": 1},
        )
        self.assertEqual(sanitize_tool_output("Write", "raw", {"exists": True}), {"created": False})
        self.assertEqual(sanitize_tool_output("Read", "raw", {}), "raw")
        self.assertEqual(sanitize_tool_output("Glob", ["a"], None), ["a"])


class OpenCodeFileTests(unittest.TestCase):
    def _write(self, content: str) -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "ses_1.json"
        path.write_text(content, encoding="utf-8")
        return path

    def test_export_file_round_trip(self) -> None:
        result = convert_opencode_file(self._write(json.dumps(_export())))
        assert result is not None
        self.assertEqual(result.transcript.id, "ses_1")

    def test_unreadable_exports_yield_none(self) -> None:
        self.assertIsNone(convert_opencode_file(self._write("{broken")))
        self.assertIsNone(convert_opencode_file(self._write("[1, 2, 3]")))


if __name__ == "__main__":
    unittest.main()
