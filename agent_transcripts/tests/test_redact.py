import unittest
from datetime import datetime, timezone

from agent_transcripts.models import AgentMessage, ToolCallMessage, UnifiedTranscript
from agent_transcripts.redact import (
    is_sensitive_file,
    redact_content,
    redact_secrets_deep,
    redact_secrets_preserve_length,
    redact_sensitive_file_in_message,
    redact_sensitive_files_in_transcript,
)


class SensitiveFileTests(unittest.TestCase):
    def test_known_secret_files(self) -> None:
        for path in (".env", "./config/.env.production", "/home/me/.ssh/id_ed25519", "certs/server.pem", "~/.aws/credentials"):
            with self.subTest(path=path):
                self.assertTrue(is_sensitive_file(path))

    def test_ordinary_files(self) -> None:
        for path in ("./src/app.py", "README.md", "environment.py"):
            with self.subTest(path=path):
                self.assertFalse(is_sensitive_file(path))


class RedactionTests(unittest.TestCase):
    def test_mask_preserves_length_and_whitespace(self) -> None:
        self.assertEqual(redact_content("KEY=VALUE"), "*********")
        self.assertEqual(redact_content("A=1\n  B = 22\t"), "***\n  * * **\t")

    def test_read_of_env_file_is_masked(self) -> None:
        message = ToolCallMessage(id="c1", toolName="Read", input={"file_path": "./.env"}, output="KEY=VALUE")
        redacted = redact_sensitive_file_in_message(message)
        self.assertEqual(redacted.output, "*********")
        self.assertEqual(message.output, "KEY=VALUE")

    def test_structured_read_output_is_masked(self) -> None:
        message = ToolCallMessage(
            id="c1",
            toolName="Read",
            input={"file_path": ".env.local"},
            output={"file": {"content": "TOKEN=abc", "numLines": 1}},
        )
        redacted = redact_sensitive_file_in_message(message)
        self.assertEqual(redacted.output, {"file": {"content": "*********", "numLines": 1}})

    def test_write_content_is_masked(self) -> None:
        message = ToolCallMessage(
            id="c2", toolName="Write", input={"file_path": "./.env", "content": "A=b c"}
        )
        redacted = redact_sensitive_file_in_message(message)
        self.assertEqual(redacted.input, {"file_path": "./.env", "content": "*** *"})

    def test_other_tools_and_files_are_untouched(self) -> None:
        read = ToolCallMessage(id="c3", toolName="Read", input={"file_path": "./app.py"}, output="x = 1")
        bash = ToolCallMessage(id="c4", toolName="Bash", input={"command": "cat .env"}, output="KEY=VALUE")
        self.assertEqual(redact_sensitive_file_in_message(read).output, "x = 1")
        self.assertEqual(redact_sensitive_file_in_message(bash).output, "KEY=VALUE")

    def test_transcript_pass_returns_copy(self) -> None:
        transcript = UnifiedTranscript(
            id="t1",
            timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
            messages=[
                AgentMessage(text="reading"),
                ToolCallMessage(id="c1", toolName="Read", input={"file_path": "./.env"}, output="K=V"),
            ],
        )
        redacted = redact_sensitive_files_in_transcript(transcript)
        self.assertEqual(redacted.messages[1].output, "***")
        self.assertEqual(transcript.messages[1].output, "K=V")
        self.assertEqual(redacted.messages[0].text, "reading")


class SecretRedactionTests(unittest.TestCase):
    def test_secret_keeps_length_and_json_shape(self) -> None:
        content = '{"value":"sk-1234567890abcdef1234"}'
        redacted = redact_secrets_preserve_length(content)
        self.assertEqual(redacted, '{"value":"' + "*" * 23 + '"}')
        self.assertEqual(len(redacted), len(content))

    def test_placeholder_uses_first_character(self) -> None:
        secret = "ghp_" + "a" * 36
        self.assertEqual(redact_secrets_preserve_length(secret, "XYZ"), "X" * 40)
        self.assertEqual(redact_secrets_preserve_length(secret, ""), "*" * 40)

    def test_assignments_and_plain_text(self) -> None:
        self.assertEqual(redact_secrets_preserve_length("password: hunter2hunter2"), "********:" + "*" * 15)
        self.assertEqual(redact_secrets_preserve_length("nothing to hide here"), "nothing to hide here")
        self.assertEqual(
            redact_secrets_preserve_length("db=postgres://u:p@host/app ok"),
            "db=********:***:********** ok",
        )

    def test_deep_redaction_walks_containers(self) -> None:
        created_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        value = {
            "token": "sk-1234567890abcdef1234",
            "items": ["Bearer abcdef", "plain"],
            "createdAt": created_at,
            "count": 2,
        }
        redacted = redact_secrets_deep(value)
        self.assertEqual(redacted["token"], "*" * 23)
        self.assertEqual(redacted["items"], ["*" * 13, "plain"])
        self.assertIs(redacted["createdAt"], created_at)
        self.assertEqual(redacted["count"], 2)
        self.assertEqual(value["token"], "sk-1234567890abcdef1234")


if __name__ == "__main__":
    unittest.main()
