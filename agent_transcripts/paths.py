"""Working-directory relative path helpers."""
from __future__ import annotations

import os
import posixpath
import re
from typing import Any

_HOME_DIR_PATTERN = re.compile(r"^(/Users/[^/]+|/home/[^/]+)")


def relativize_path(target: str, cwd: str | None) -> str:
    """Express a single path argument relative to ``cwd``.

    Relative targets gain a ``./`` prefix. Absolute targets outside ``cwd``
    are returned unchanged.
    """
    if not target:
        return target
    normalized = target.replace("\\", "/")
    if not posixpath.isabs(normalized):
        if normalized in {".", "./"}:
            return "."
        if normalized.startswith("./") or normalized.startswith("../"):
            return normalized
        return f"./{normalized}"

    if not cwd:
        return target
    try:
        relative = posixpath.relpath(normalized, cwd.replace("\\", "/"))
    except ValueError:
        return target
    if relative in {"", "."}:
        return "."
    if relative.startswith("..") or posixpath.isabs(relative):
        return target
    return f"./{relative}"


def relativize_paths(value: Any, cwd: str | None) -> Any:
    """Rewrite every occurrence of ``cwd`` in nested strings to ``.``-relative form.

    Dicts, lists and strings are rebuilt; other values pass through untouched.
    Already-relative values are left as they are, so the rewrite is idempotent.
    """
    if not cwd:
        return value
    prefix = cwd if cwd.endswith("/") else f"{cwd}/"
    bare = prefix[:-1]
    if not bare:
        return value

    def _rewrite(item: Any) -> Any:
        if isinstance(item, str):
            if prefix in item:
                return item.replace(prefix, "./")
            if bare in item:
                return item.replace(bare, ".")
            return item
        if isinstance(item, list):
            return [_rewrite(entry) for entry in item]
        if isinstance(item, dict):
            return {key: _rewrite(entry) for key, entry in item.items()}
        return item

    return _rewrite(value)


def format_cwd_with_tilde(path: str | None) -> str:
    """Collapse a home-directory prefix to ``~``."""
    if not path:
        return ""
    home = os.path.expanduser("~")
    if home and home not in {"~", "/"} and (path == home or path.startswith(f"{home}/")):
        return "~" + path[len(home):]
    return _HOME_DIR_PATTERN.sub("~", path, count=1)


def normalize_relative_cwd(value: str | None) -> str:
    """Map the repository root (``.`` or missing) to an empty string."""
    if value is None or value == ".":
        return ""
    return value


def relative_cwd_between(root: str | None, cwd: str | None) -> str | None:
    """Return ``cwd`` relative to ``root``; None when equal, missing or outside."""
    if not root or not cwd:
        return None
    try:
        relative = posixpath.relpath(cwd.replace("\\", "/"), root.replace("\\", "/"))
    except ValueError:
        return None
    if relative in {"", "."} or relative.startswith(".."):
        return None
    return relative
