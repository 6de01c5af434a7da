"""Promote recognisable shell invocations to structured Read/Write/Grep tool calls."""
from __future__ import annotations

import logging
import re
from typing import Any, Callable, NamedTuple

from agent_transcripts.models import ToolCallMessage
from agent_transcripts.parsers.context import as_dict, as_string, coerce_number
from agent_transcripts.paths import relativize_path

logger = logging.getLogger("agent_transcripts.parsers.shell")

_LOGIN_SHELLS = {"bash", "zsh", "/bin/bash", "/bin/zsh"}
_HEREDOC_WRITE_PATTERN = re.compile(r"cat\s+<<'EOF'\s+>\s+(\S+)\s*\n([\s\S]*?)EOF")
_CAT_READ_PATTERN = re.compile(r"cat\s+(\S+)")
_SED_RANGE_PATTERN = re.compile(r"^(\d+)(?:,(\d+))?p$")
_EXIT_CODE_PATTERN = re.compile(r"Process exited with code (\d+)")
_WALL_TIME_PATTERN = re.compile(r"Wall time: ([\d.]+) seconds")
_OUTPUT_MARKER_PATTERN = re.compile(r"Output:\n([\s\S]*?)$")
_PATCH_FILE_PATTERN = re.compile(r"^\*\*\* (?:Update|Add|Delete) File: (.+)$")

# rg flags that consume the following token, keyed to the input field they set.
_RG_VALUE_FLAGS = {
    "-A": "-A",
    "-B": "-B",
    "-C": "-C",
    "-g": "glob",
    "--glob": "glob",
    "-t": "type",
    "--type": "type",
}


class ShellRewrite(NamedTuple):
    tool_name: str
    input: dict[str, Any]
    output: Any


class ShellRule(NamedTuple):
    name: str
    matcher: Callable[[str, list[str]], Any]
    builder: Callable[[Any, Any, str | None], ShellRewrite | None]


# ── Command extraction ──────────────────────────────────────────────

def extract_command(tool_input: Any) -> str | None:
    """Return the script text of a shell call input.

    Accepts ``{"cmd": str}``, ``{"command": str}`` or
    ``{"command": [<shell>, "-lc", <script>, ...]}``.
    """
    record = as_dict(tool_input)
    cmd = record.get("cmd")
    if isinstance(cmd, str):
        return cmd or None
    command = record.get("command")
    if isinstance(command, str):
        return command or None
    if isinstance(command, list) and len(command) >= 3:
        if command[0] in _LOGIN_SHELLS and command[1] == "-lc":
            return as_string(command[2])
    return None


def build_bash_input(tool_input: Any) -> Any:
    """Reduce a raw shell call input to ``{command, description}``."""
    if not isinstance(tool_input, dict):
        return tool_input
    bash_input: dict[str, Any] = {}
    command = extract_command(tool_input)
    if command:
        bash_input["command"] = command
    description = tool_input.get("description")
    if isinstance(description, str):
        bash_input["description"] = description
    return bash_input


def split_shell_args(command: str) -> list[str]:
    """Split a command line into words, honouring quotes and backslash escapes.

    Never raises; unterminated quotes simply run to the end of the input.
    """
    args: list[str] = []
    current: list[str] = []
    quote: str | None = None
    escape_next = False

    for char in command:
        if escape_next:
            current.append(char)
            escape_next = False
            continue
        if char == "\\" and quote != "'":
            escape_next = True
            continue
        if quote:
            if char == quote:
                quote = None
            else:
                current.append(char)
            continue
        if char in {"'", '"'}:
            quote = char
            continue
        if char.isspace():
            if current:
                args.append("".join(current))
                current = []
            continue
        current.append(char)

    if current:
        args.append("".join(current))
    return args


def extract_stdout(output: Any) -> str | None:
    if isinstance(output, str):
        return output
    return as_string(as_dict(output).get("stdout"))


# ── Output normalization ────────────────────────────────────────────

def normalize_shell_output(value: Any) -> Any:
    """Normalize the structured ``{output, metadata}`` shell result."""
    if not isinstance(value, dict):
        return value
    result: dict[str, Any] = {}
    stdout = value.get("stdout")
    if isinstance(stdout, str):
        result["stdout"] = stdout
    else:
        output = as_string(value.get("output"))
        if output:
            result["stdout"] = output
    stderr = as_string(value.get("stderr"))
    if stderr:
        result["stderr"] = stderr
    metadata = as_dict(value.get("metadata"))
    exit_code = metadata.get("exit_code", metadata.get("exitCode"))
    if exit_code is None:
        exit_code = value.get("exit_code", value.get("exitCode"))
    result["exitCode"] = coerce_number(exit_code)
    duration = coerce_number(metadata.get("duration_seconds", metadata.get("durationSeconds")))
    if duration > 0:
        result["durationSeconds"] = duration
    return result or None


def normalize_exec_command_output(value: Any) -> Any:
    """Normalize the human-readable exec_command block, or fall back to the structured shape.

    Example block:
      Wall time: 0.0510 seconds
      Process exited with code 0
      Output:
      <captured text>
    """
    text = as_string(value)
    if not text:
        return normalize_shell_output(value)

    result: dict[str, Any] = {}
    exit_match = _EXIT_CODE_PATTERN.search(text)
    if exit_match:
        result["exitCode"] = int(exit_match.group(1))
    time_match = _WALL_TIME_PATTERN.search(text)
    if time_match:
        try:
            duration = float(time_match.group(1))
        except ValueError:
            duration = 0.0
        if duration > 0:
            result["durationSeconds"] = duration
    output_match = _OUTPUT_MARKER_PATTERN.search(text)
    if output_match:
        stdout = output_match.group(1).strip()
        if stdout:
            result["stdout"] = stdout
    return result or None


def normalize_apply_patch_output(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    result: dict[str, Any] = {}
    message = as_string(value.get("output"))
    if message:
        result["message"] = message
    metadata = value.get("metadata")
    if isinstance(metadata, dict):
        result["exitCode"] = coerce_number(metadata.get("exit_code", metadata.get("exitCode")))
        duration = coerce_number(metadata.get("duration_seconds", metadata.get("durationSeconds")))
        if duration > 0:
            result["durationSeconds"] = duration
    return result or None


def parse_apply_patch(text: str, cwd: str | None) -> dict[str, Any]:
    """Split an apply_patch envelope into the target file and the hunk body."""
    file_path: str | None = None
    diff_lines: list[str] = []
    for line in re.split(r"\r?\n", text):
        if line.startswith("*** "):
            match = _PATCH_FILE_PATTERN.match(line)
            if match:
                file_path = match.group(1).strip()
            continue
        diff_lines.append(line)

    result: dict[str, Any] = {}
    if file_path:
        result["file_path"] = relativize_path(file_path, cwd) if cwd else file_path
    diff = "\n".join(diff_lines).strip()
    if diff:
        result["diff"] = diff if diff.endswith("\n") else f"{diff}\n"
    return result


# ── Rules ───────────────────────────────────────────────────────────

def _file_path_in_cwd(name: str, cwd: str | None) -> str:
    if not cwd:
        return name if name.startswith("/") else relativize_path(name, None)
    if name.startswith("/"):
        return relativize_path(name, cwd)
    return relativize_path(f"{cwd.rstrip('/')}/{name}", cwd)


def _match_heredoc_write(command: str, _args: list[str]) -> Any:
    return _HEREDOC_WRITE_PATTERN.fullmatch(command)


def _build_heredoc_write(match: Any, _output: Any, cwd: str | None) -> ShellRewrite:
    tool_input = {
        "file_path": _file_path_in_cwd(match.group(1), cwd),
        "content": match.group(2) or "",
    }
    return ShellRewrite("Write", tool_input, None)


def _match_cat_read(command: str, _args: list[str]) -> Any:
    return _CAT_READ_PATTERN.fullmatch(command)


def _build_cat_read(match: Any, output: Any, cwd: str | None) -> ShellRewrite:
    content = as_string(as_dict(output).get("stdout")) if isinstance(output, dict) else None
    return ShellRewrite("Read", {"file_path": _file_path_in_cwd(match.group(1), cwd)}, content)


def parse_rg_args(args: list[str], cwd: str | None) -> dict[str, Any] | None:
    """Map ``rg`` arguments onto Grep tool input; None when no pattern is given."""
    if len(args) < 2:
        return None
    tool_input: dict[str, Any] = {}
    pattern: str | None = None
    path_arg: str | None = None

    index = 1
    while index < len(args):
        arg = args[index]
        index += 1
        if arg == "--":
            continue
        if arg.startswith("-"):
            if arg == "-i":
                tool_input["-i"] = True
            elif arg == "-U":
                tool_input["multiline"] = True
            elif arg in {"-l", "--files-with-matches"}:
                tool_input["output_mode"] = "files_with_matches"
            elif arg in {"-c", "--count"}:
                tool_input["output_mode"] = "count"
            elif arg in _RG_VALUE_FLAGS or arg in {"-e", "--regexp"}:
                value = args[index] if index < len(args) else ""
                if value:
                    index += 1
                    if arg in {"-e", "--regexp"}:
                        pattern = value
                    else:
                        tool_input[_RG_VALUE_FLAGS[arg]] = value
            continue
        if pattern is None:
            pattern = arg
        elif path_arg is None:
            path_arg = arg

    if not pattern:
        return None
    tool_input["pattern"] = pattern
    if path_arg:
        tool_input["path"] = relativize_path(path_arg, cwd) if cwd else path_arg
    return tool_input


def _match_rg(_command: str, args: list[str]) -> Any:
    if not args or args[0] != "rg":
        return None
    return parse_rg_args(args, None) and args


def _build_rg(args: list[str], output: Any, cwd: str | None) -> ShellRewrite | None:
    tool_input = parse_rg_args(args, cwd)
    if tool_input is None:
        return None
    stdout = extract_stdout(output)
    grep_output: dict[str, Any] | None = None
    if stdout:
        lines = [line for line in stdout.split("\n") if line.strip()]
        if tool_input.get("output_mode") == "files_with_matches":
            grep_output = {
                "mode": "files_with_matches",
                "filenames": lines,
                "numMatches": len(lines),
            }
        else:
            grep_output = {
                "mode": "content",
                "content": stdout,
                "numMatches": len(lines),
                "numLines": len(lines),
            }
    return ShellRewrite("Grep", tool_input, grep_output)


def parse_sed_args(args: list[str], cwd: str | None) -> tuple[str, int] | None:
    """Return ``(file_path, start_line)`` for ``sed -n 'N[,M]p' FILE``."""
    if "-n" not in args:
        return None
    n_index = args.index("-n")
    if n_index + 2 >= len(args):
        return None
    range_arg = args[n_index + 1]
    file_arg = args[n_index + 2]
    if not range_arg or not file_arg:
        return None
    match = _SED_RANGE_PATTERN.match(range_arg)
    if not match:
        return None
    start_line = int(match.group(1))
    if start_line <= 0:
        return None
    file_path = relativize_path(file_arg, cwd) if cwd else file_arg
    return file_path, start_line


def _match_sed(_command: str, args: list[str]) -> Any:
    if len(args) < 4 or args[0] != "sed":
        return None
    return parse_sed_args(args, None) and args


def _build_sed(args: list[str], output: Any, cwd: str | None) -> ShellRewrite | None:
    parsed = parse_sed_args(args, cwd)
    if parsed is None:
        return None
    file_path, start_line = parsed
    stdout = extract_stdout(output)
    read_output: dict[str, Any] | None = None
    if stdout:
        read_output = {
            "file": {
                "content": stdout,
                "numLines": len(stdout.split("\n")),
                "startLine": start_line,
            }
        }
    return ShellRewrite("Read", {"file_path": file_path}, read_output)


# Evaluated top to bottom; the first rule whose matcher returns a value wins.
SHELL_RULES: tuple[ShellRule, ...] = (
    ShellRule("heredoc-write", _match_heredoc_write, _build_heredoc_write),
    ShellRule("cat-read", _match_cat_read, _build_cat_read),
    ShellRule("rg-search", _match_rg, _build_rg),
    ShellRule("sed-window", _match_sed, _build_sed),
)


def reinterpret_command(command: str, output: Any, cwd: str | None) -> ShellRewrite | None:
    """Apply the first matching rule to a shell command and its captured output."""
    args = split_shell_args(command)
    for rule in SHELL_RULES:
        matched = rule.matcher(command, args)
        if not matched:
            continue
        rewrite = rule.builder(matched, output, cwd)
        if rewrite is not None:
            logger.debug("Reinterpreted shell command as %s via %s", rewrite.tool_name, rule.name)
            return rewrite
    return None


def reinterpret_shell_call(message: ToolCallMessage, cwd: str | None) -> bool:
    """Rewrite a Bash tool call in place when its command matches a rule.

    Returns True when the call was reclassified.
    """
    command = extract_command(message.input)
    if not command:
        return False
    rewrite = reinterpret_command(command, message.output, cwd)
    if rewrite is None:
        return False
    message.toolName = rewrite.tool_name
    message.input = rewrite.input
    message.output = rewrite.output
    return True
