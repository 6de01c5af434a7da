import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from agent_transcripts import observability
from agent_transcripts.parsers.platforms import registry
from agent_transcripts.parsers.platforms.registry import (
    convert_session_file,
    convert_session_files,
    detect_source,
    scan_sessions,
)
from agent_transcripts.schema import TranscriptSchemaError


def _codex_lines(session_id: str) -> list[dict]:
    return [
        {"type": "session_meta", "timestamp": "2026-02-16T10:00:00Z", "payload": {"id": session_id, "cwd": "/repo"}},
        {"type": "turn_context", "timestamp": "2026-02-16T10:00:00Z", "payload": {"model": "gpt-5"}},
        {
            "type": "response_item",
            "timestamp": "2026-02-16T10:00:01Z",
            "payload": {"type": "message", "role": "user", "content": [{"type": "input_text", "text": "hello"}]},
        },
        {
            "type": "response_item",
            "timestamp": "2026-02-16T10:00:02Z",
            "payload": {
                "type": "function_call",
                "name": "shell",
                "call_id": "c1",
                "arguments": json.dumps({"command": ["bash", "-lc", "make"]}),
            },
        },
        {
            "type": "response_item",
            "timestamp": "2026-02-16T10:00:03Z",
            "payload": {"type": "function_call_output", "call_id": "c1", "output": json.dumps({"output": "ok", "metadata": {"exit_code": 0}})},
        },
        {
            "type": "event_msg",
            "timestamp": "2026-02-16T10:00:04Z",
            "payload": {"type": "token_count", "info": {"last_token_usage": {"input_tokens": 10, "output_tokens": 4}}},
        },
    ]


def _pi_lines() -> list[dict]:
    return [
        {"type": "session", "id": "pi-9", "cwd": "/repo", "timestamp": "2026-02-16T10:00:00Z"},
        {
            "type": "message",
            "id": "A",
            "parentId": None,
            "timestamp": "2026-02-16T10:00:01Z",
            "message": {"role": "user", "content": "hi"},
        },
    ]


def _opencode_export() -> dict:
    return {
        "info": {"id": "ses_9", "time": {"created": 1760000000000}},
        "messages": [
            {
                "info": {"id": "m1", "role": "user", "time": {"created": 1760000000000}},
                "parts": [{"type": "text", "text": "hello"}],
            }
        ],
    }


def _claude_code_lines() -> list[dict]:
    return [
        {"type": "summary", "summary": "Greeting", "leafUuid": "u1"},
        {
            "type": "user",
            "uuid": "u1",
            "sessionId": "cc-1",
            "timestamp": "2026-02-16T10:00:01Z",
            "message": {"role": "user", "content": "hello"},
        },
    ]


def _cline_history() -> list[dict]:
    return [{"role": "user", "content": [{"type": "text", "text": "<task>\nhello\n</task>"}]}]


class RegistryTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)

    def _write_jsonl(self, name: str, lines: list[dict]) -> Path:
        path = self.root / name
        path.write_text("\n".join(json.dumps(line) for line in lines), encoding="utf-8")
        return path

    def _write_json(self, name: str, data: dict | list) -> Path:
        path = self.root / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return path


class DetectSourceTests(RegistryTestCase):
    def test_formats_are_detected(self) -> None:
        self.assertEqual(detect_source(self._write_jsonl("rollout.jsonl", _codex_lines("s1"))), "codex")
        self.assertEqual(detect_source(self._write_jsonl("pi.jsonl", _pi_lines())), "pi")
        self.assertEqual(detect_source(self._write_json("export.json", _opencode_export())), "opencode")
        self.assertEqual(detect_source(self._write_jsonl("project.jsonl", _claude_code_lines())), "claude-code")
        self.assertEqual(detect_source(self._write_json("history.json", _cline_history())), "cline")

    def test_cline_history_is_detected_by_name(self) -> None:
        path = self._write_json("api_conversation_history.json", {"unexpected": True})
        self.assertEqual(detect_source(path), "cline")

    def test_unknown_suffix_and_missing_file(self) -> None:
        notes = self.root / "notes.txt"
        notes.write_text("hello", encoding="utf-8")
        self.assertIsNone(detect_source(notes))
        self.assertEqual(detect_source(self.root / "missing.jsonl"), "codex")


class ConvertSessionFileTests(RegistryTestCase):
    def test_each_format_is_dispatched(self) -> None:
        codex = convert_session_file(self._write_jsonl("rollout.jsonl", _codex_lines("s1")))
        pi = convert_session_file(self._write_jsonl("pi.jsonl", _pi_lines()))
        opencode = convert_session_file(self._write_json("export.json", _opencode_export()))
        self.assertEqual((codex.transcript.source, codex.transcript.id), ("codex", "s1"))
        self.assertEqual((pi.transcript.source, pi.transcript.id), ("pi", "pi-9"))
        self.assertEqual((opencode.transcript.source, opencode.transcript.id), ("opencode", "ses_9"))

        claude = convert_session_file(self._write_jsonl("project.jsonl", _claude_code_lines()))
        self.assertEqual((claude.transcript.source, claude.transcript.id), ("claude-code", "cc-1"))

        task_dir = self.root / "task-42"
        task_dir.mkdir()
        history = task_dir / "api_conversation_history.json"
        history.write_text(json.dumps(_cline_history()), encoding="utf-8")
        cline = convert_session_file(history)
        self.assertEqual((cline.transcript.source, cline.transcript.id), ("cline", "task-42"))

    def test_forced_source_and_unknown_source(self) -> None:
        path = self._write_jsonl("pi.jsonl", _pi_lines())
        self.assertIsNone(convert_session_file(path, source="codex"))
        self.assertIsNone(convert_session_file(path, source="gemini"))

    def test_schema_errors_are_counted_and_propagated(self) -> None:
        def failing(_path, _options):
            raise TranscriptSchemaError("bad transcript")

        path = self._write_jsonl("rollout.jsonl", _codex_lines("s1"))
        with mock.patch.dict(registry.CONVERTERS, {"codex": failing}), \
                mock.patch.object(observability, "record_parser_failure") as record_failure, \
                mock.patch.object(observability, "record_conversion") as record_conversion:
            with self.assertRaises(TranscriptSchemaError):
                convert_session_file(path)
        record_failure.assert_called_once_with("codex")
        self.assertEqual(record_conversion.call_args.args[:2], ("codex", "error"))

    def test_transcript_metrics_are_recorded_when_enabled(self) -> None:
        path = self._write_jsonl("rollout.jsonl", _codex_lines("s1"))
        with mock.patch.object(observability, "is_enabled", return_value=True), \
                mock.patch.object(observability, "record_tool_result") as record_tool, \
                mock.patch.object(observability, "record_token_cost") as record_cost, \
                mock.patch.object(observability, "record_conversion") as record_conversion:
            convert_session_file(path)
        record_tool.assert_called_once_with("codex", "Bash", "ok", count=1)
        record_cost.assert_called_once_with(model="openai/gpt-5", token_input=10, token_output=4, cost_usd=0.0)
        self.assertEqual(record_conversion.call_args.args[:2], ("codex", "ok"))


class BatchConversionTests(RegistryTestCase):
    def test_failed_sessions_are_skipped(self) -> None:
        good = self._write_jsonl("good.jsonl", _codex_lines("s1"))
        bad = self._write_jsonl("bad.jsonl", _codex_lines("s2"))
        real_converter = registry.CONVERTERS["codex"]

        def flaky(path, options):
            if path.name == "bad.jsonl":
                raise TranscriptSchemaError("bad transcript")
            return real_converter(path, options)

        with mock.patch.dict(registry.CONVERTERS, {"codex": flaky}):
            with self.assertLogs("agent_transcripts.parsers.registry", level="WARNING"):
                results = convert_session_files([bad, good])
        self.assertEqual([result.transcript.id for result in results], ["s1"])

    def test_scan_prefers_recent_files(self) -> None:
        oldest = self._write_jsonl("a.jsonl", _codex_lines("old"))
        newest = self._write_jsonl("b.jsonl", _codex_lines("new"))
        middle = self._write_json("c.json", _opencode_export())
        (self.root / "ignored.txt").write_text("x", encoding="utf-8")
        (self.root / "nested.jsonl").mkdir()
        os.utime(oldest, (1_000, 1_000))
        os.utime(middle, (2_000, 2_000))
        os.utime(newest, (3_000, 3_000))

        results = scan_sessions(self.root)
        self.assertEqual([result.transcript.id for result in results], ["new", "ses_9", "old"])
        limited = scan_sessions(self.root, max_files=2)
        self.assertEqual([result.transcript.id for result in limited], ["new", "ses_9"])

    def test_scan_of_missing_directory(self) -> None:
        self.assertEqual(scan_sessions(self.root / "absent"), [])


if __name__ == "__main__":
    unittest.main()
