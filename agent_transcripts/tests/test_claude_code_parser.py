import hashlib
import json
import tempfile
import unittest
from pathlib import Path

from agent_transcripts.date_utils import file_mtime
from agent_transcripts.models import GitContext, ModelUsage, TokenUsage, ToolCallMessage
from agent_transcripts.parsers.context import ConvertOptions
from agent_transcripts.parsers.platforms.claude_code.parser import (
    convert_claude_code_file,
    convert_claude_code_transcript,
    normalize_prompt_text,
    sanitize_tool_call,
)
from agent_transcripts.pricing import load_pricing_table

CWD = "/home/dev/src/github.com/acme/widgets"
USAGE = {"input_tokens": 10, "cache_creation_input_tokens": 5, "cache_read_input_tokens": 100, "output_tokens": 20}


def _user(uuid: str, second: int, content, **extra) -> dict:
    return {
        "type": "user",
        "uuid": uuid,
        "sessionId": "cc-1",
        "cwd": CWD,
        "gitBranch": "main",
        "version": "1.0.80",
        "timestamp": f"2026-04-02T10:00:{second:02d}.000Z",
        "message": {"role": "user", "content": content},
        **extra,
    }


def _assistant(uuid: str, second: int, content: list, **extra) -> dict:
    return {
        "type": "assistant",
        "uuid": uuid,
        "sessionId": "cc-1",
        "cwd": CWD,
        "requestId": "req_1",
        "timestamp": f"2026-04-02T10:00:{second:02d}.000Z",
        "message": {"id": "msg_1", "role": "assistant", "model": "claude-sonnet-4", "content": content, "usage": USAGE},
        **extra,
    }


def _edit_result(uuid: str, second: int) -> dict:
    return _user(
        uuid,
        second,
        [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "The file has been updated."}],
        toolUseResult={
            "filePath": f"{CWD}/tests/test_app.py",
            "oldString": "a",
            "newString": "b",
            "originalFile": "ctx\na\n",
            "structuredPatch": [{"oldStart": 12, "lines": [" ctx", "-a", "+b"]}],
            "userModified": False,
        },
    )


def _records() -> list[dict]:
    return [
        {"type": "summary", "summary": "Fix failing test", "leafUuid": "a2"},
        _user("u1", 1, "Please fix the failing test"),
        _assistant(
            "a1",
            2,
            [
                {"type": "thinking", "thinking": "Look at the test first"},
                {
                    "type": "tool_use",
                    "id": "toolu_1",
                    "name": "Edit",
                    "input": {"file_path": f"{CWD}/tests/test_app.py", "old_string": "a", "new_string": "b"},
                },
            ],
        ),
        _edit_result("u2", 3),
        _assistant("a2", 4, [{"type": "text", "text": "Updated the assertion."}]),
        _user("s1", 5, "Subagent prompt", isSidechain=True),
    ]


class ClaudeCodeConverterTests(unittest.TestCase):
    def test_session_is_converted(self) -> None:
        result = convert_claude_code_transcript(_records())
        self.assertIsNotNone(result)
        assert result is not None
        transcript = result.transcript

        self.assertEqual(transcript.id, "cc-1")
        self.assertEqual(transcript.source, "claude-code")
        self.assertEqual(transcript.model, "anthropic/claude-sonnet-4")
        self.assertEqual(transcript.clientVersion, "1.0.80")
        self.assertEqual(transcript.preview, "Please fix the failing test")
        self.assertEqual(transcript.cwd, "~/src/github.com/acme/widgets")
        self.assertEqual(transcript.git, GitContext(repo="github.com/acme/widgets", branch="main", relativeCwd=""))
        self.assertEqual(transcript.timestamp.isoformat(), "2026-04-02T10:00:04+00:00")
        self.assertEqual(
            [message.type for message in transcript.messages],
            ["user", "thinking", "tool-call", "agent"],
        )

        tool = transcript.messages[2]
        self.assertEqual((tool.id, tool.toolName, tool.model), ("toolu_1", "Edit", "anthropic/claude-sonnet-4"))
        self.assertEqual(
            tool.input,
            {"file_path": "./tests/test_app.py", "diff": " ctx\n-a\n+b\n", "lineOffset": 12},
        )
        self.assertEqual(tool.output, {"userModified": False})
        self.assertIsNone(tool.isError)

    def test_streamed_usage_is_counted_once(self) -> None:
        pricing = load_pricing_table(
            {
                "claude-sonnet-4": {
                    "input_cost_per_token": 0.001,
                    "output_cost_per_token": 0.002,
                    "cache_creation_input_token_cost": 0.0005,
                    "cache_read_input_token_cost": 0.0001,
                }
            }
        )
        result = convert_claude_code_transcript(_records(), ConvertOptions(pricing=pricing))
        assert result is not None
        transcript = result.transcript

        usage = TokenUsage(inputTokens=115, cachedInputTokens=100, outputTokens=20, totalTokens=135)
        self.assertEqual(transcript.tokenUsage, usage)
        self.assertEqual(transcript.modelUsage, [ModelUsage(model="anthropic/claude-sonnet-4", usage=usage)])
        self.assertEqual(transcript.blendedTokens, 35)
        self.assertAlmostEqual(transcript.costUsd, 0.0625)

    def test_options_override_git_and_version(self) -> None:
        options = ConvertOptions(git_context=None, client_version="2.0.0")
        result = convert_claude_code_transcript(_records(), options)
        assert result is not None
        self.assertIsNone(result.transcript.git)
        self.assertEqual(result.transcript.clientVersion, "2.0.0")

    def test_commands_summaries_and_reminders(self) -> None:
        records = [
            _user("c1", 1, "<command-name>/model</command-name>\n<command-args>opus</command-args>"),
            _user("c2", 2, "<local-command-stdout>\x1b[1mSet model to opus\x1b[22m</local-command-stdout>"),
            _user("c3", 3, "<command-name>/clear</command-name>\n<command-args></command-args>"),
            _user("c4", 4, "<local-command-stdout></local-command-stdout>"),
            _user("m1", 5, "Caveat: the messages below were generated by the user", isMeta=True),
            _user("k1", 6, "This session is being continued from a previous conversation.", isCompactSummary=True),
            _user("r1", 7, "Run tests<system-reminder>stay focused</system-reminder>"),
        ]
        result = convert_claude_code_transcript(records)
        assert result is not None
        messages = result.transcript.messages
        self.assertEqual([message.type for message in messages], ["command", "compaction-summary", "user"])
        self.assertEqual(
            (messages[0].name, messages[0].args, messages[0].output),
            ("/model", "opus", "Set model to opus"),
        )
        self.assertEqual(messages[2].text, "Run tests")
        self.assertEqual(result.transcript.preview, "Run tests")

    def test_repeated_records_are_emitted_once(self) -> None:
        image = {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "aGVsbG8="}}
        stale = _edit_result("u3", 4)
        stale["toolUseResult"] = {"userModified": True}
        records = [
            _user("u1", 1, "Look at this"),
            _user("u1", 1, "Look at this"),
            _user("u1b", 1, [{"type": "text", "text": "Look at this"}, image]),
            *_records()[2:4],
            stale,
        ]
        result = convert_claude_code_transcript(records)
        assert result is not None
        messages = result.transcript.messages
        digest = hashlib.sha256(b"hello").hexdigest()

        self.assertEqual([message.type for message in messages], ["user", "thinking", "tool-call"])
        self.assertEqual([ref.sha256 for ref in messages[0].images], [digest])
        self.assertEqual(list(result.blobs), [digest])
        self.assertEqual(messages[2].output, {"userModified": False})

    def test_tool_result_errors_and_shell_wrapper(self) -> None:
        records = [
            _user("u1", 1, "List and read"),
            _assistant(
                "a1",
                2,
                [
                    {"type": "tool_use", "id": "toolu_b", "name": "Bash", "input": {"command": "bash -lc 'ls -la'"}},
                    {"type": "tool_use", "id": "toolu_r", "name": "Read", "input": {"file_path": f"{CWD}/missing.py"}},
                ],
            ),
            _user(
                "u2",
                3,
                [{"type": "tool_result", "tool_use_id": "toolu_b", "content": "a.py"}],
                toolUseResult={"stdout": "a.py", "stderr": "", "stdoutLines": 1, "stderrLines": 0},
            ),
            _user(
                "u3",
                4,
                [{"type": "tool_result", "tool_use_id": "toolu_r", "content": "Error: file does not exist"}],
            ),
        ]
        result = convert_claude_code_transcript(records)
        assert result is not None
        bash, read = result.transcript.messages[1:]
        self.assertEqual(bash.input, {"command": "ls -la"})
        self.assertEqual(bash.output, {"stdout": "a.py", "stderr": ""})
        self.assertIsNone(bash.isError)
        self.assertEqual(read.input, {"file_path": "./missing.py"})
        self.assertTrue(read.isError)

    def test_sidechain_and_empty_sessions_yield_none(self) -> None:
        self.assertIsNone(convert_claude_code_transcript([]))
        self.assertIsNone(convert_claude_code_transcript([{"type": "summary", "summary": "x", "leafUuid": "u1"}]))
        self.assertIsNone(convert_claude_code_transcript([_user("s1", 1, "Subagent prompt", isSidechain=True)]))
        self.assertIsNone(convert_claude_code_transcript([_user("m1", 1, "Caveat", isMeta=True)]))


class ClaudeCodeSanitizerTests(unittest.TestCase):
    def test_edit_falls_back_to_strings_and_cat_line_numbers(self) -> None:
        message = ToolCallMessage(id="toolu_1", toolName="Edit")
        output = "The file /x.py has been updated. Result of running `cat -n`:\n    42→b\n"
        sanitize_tool_call(message, {"file_path": "/x.py", "old_string": "a", "new_string": "b"}, output, None, None)
        self.assertEqual(message.input, {"file_path": "/x.py", "diff": "-a\n+b\n", "lineOffset": 42})
        self.assertEqual(message.output, output)

    def test_failed_edit_keeps_no_diff(self) -> None:
        message = ToolCallMessage(id="toolu_1", toolName="Edit")
        sanitize_tool_call(message, {"old_string": "a", "new_string": "b"}, "Error: string not found", None, None)
        self.assertEqual(message.input, {})
        self.assertTrue(message.isError)

    def test_read_and_todo_outputs_are_reduced(self) -> None:
        read = ToolCallMessage(id="r", toolName="Read")
        raw_output = {
            "type": "text",
            "file": {"filePath": "/x.py", "content": "x", "numLines": 1, "startLine": 1, "totalLines": 1},
        }
        sanitize_tool_call(read, {"file_path": "/x.py"}, raw_output, None, None)
        self.assertEqual(
            read.output,
            {"type": "text", "file": {"content": "x", "numLines": 1, "startLine": 1, "totalLines": 1}},
        )

        todo = ToolCallMessage(id="t", toolName="TodoWrite")
        todos = [{"content": "Ship", "status": "pending", "activeForm": "Shipping"}]
        sanitize_tool_call(todo, {"todos": todos}, {"oldTodos": [], "newTodos": todos}, None, None)
        self.assertEqual(todo.input, {"todos": [{"content": "Ship", "status": "pending"}]})
        self.assertEqual(todo.output["newTodos"], [{"content": "Ship", "status": "pending"}])
        self.assertIn("activeForm", todos[0])

    def test_task_usage_is_normalized(self) -> None:
        task = ToolCallMessage(id="t", toolName="Task")
        raw_output = {
            "content": "done",
            "prompt": "do it",
            "totalTokens": 30,
            "usage": {"input_tokens": 10, "cache_read_input_tokens": 5, "output_tokens": 15},
        }
        sanitize_tool_call(task, {"prompt": "do it"}, raw_output, None, None)
        self.assertEqual(
            task.output,
            {
                "content": "done",
                "usage": {
                    "inputTokens": 10,
                    "cachedInputTokens": 5,
                    "outputTokens": 15,
                    "reasoningOutputTokens": 0,
                    "totalTokens": 30,
                },
            },
        )

    def test_prompt_text_skips_shell_noise(self) -> None:
        self.assertEqual(normalize_prompt_text("λ ls\nerror: boom\nPlease fix the build\n"), "Please fix the build")
        self.assertIsNone(normalize_prompt_text("[Request interrupted by user]"))


class ClaudeCodeFileTests(unittest.TestCase):
    def _write_jsonl(self, lines: list) -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "session.jsonl"
        path.write_text(
            "\n".join(line if isinstance(line, str) else json.dumps(line) for line in lines),
            encoding="utf-8",
        )
        return path

    def test_malformed_lines_are_skipped(self) -> None:
        path = self._write_jsonl(["{oops", *_records(), ""])
        result = convert_claude_code_file(path)
        assert result is not None
        self.assertEqual(result.transcript.id, "cc-1")
        self.assertEqual(result.transcript.messageCount, 4)

    def test_file_mtime_stands_in_for_missing_timestamps(self) -> None:
        record = {"type": "user", "uuid": "u1", "message": {"role": "user", "content": "hello"}}
        path = self._write_jsonl([record])
        result = convert_claude_code_file(path)
        assert result is not None
        self.assertEqual(result.transcript.timestamp, file_mtime(path))
        self.assertEqual(result.transcript.id, "u1")
        self.assertEqual(result.transcript.cwd, "")

    def test_unreadable_file_yields_none(self) -> None:
        self.assertIsNone(convert_claude_code_file(Path(tempfile.gettempdir()) / "missing-claude-session.jsonl"))


if __name__ == "__main__":
    unittest.main()
