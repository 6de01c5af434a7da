"""Git context helpers derived from session metadata."""
from __future__ import annotations

import re

from agent_transcripts.models import GitContext
from agent_transcripts.paths import normalize_relative_cwd

_SSH_REMOTE_PATTERN = re.compile(r"git@([^:]+):(.+?)(?:\.git)?$")
_HTTPS_REMOTE_PATTERN = re.compile(r"https?://([^/]+)/(.+?)(?:\.git)?$")


def parse_git_remote_url(url: str | None) -> str | None:
    """Return ``host/owner/repo`` for SSH or HTTPS remote URLs.

    Example:
      git@github.com:owner/repo.git -> github.com/owner/repo
    """
    raw = (url or "").strip()
    if not raw:
        return None
    match = _SSH_REMOTE_PATTERN.search(raw) or _HTTPS_REMOTE_PATTERN.search(raw)
    if not match:
        return None
    return f"{match.group(1)}/{match.group(2)}"


def derive_relative_cwd(cwd: str | None, repo_name: str | None) -> str | None:
    """Locate ``cwd`` below the last path segment named ``repo_name``."""
    if not cwd:
        return None
    segments = [segment for segment in cwd.replace("\\", "/").split("/") if segment]
    if not segments or not repo_name:
        return None
    for index in range(len(segments) - 1, -1, -1):
        if segments[index] == repo_name:
            remainder = "/".join(segments[index + 1:])
            return remainder or "."
    return None


def build_git_context(
    repository_url: str | None,
    branch: str | None,
    cwd: str | None,
) -> GitContext:
    repo = parse_git_remote_url(repository_url)
    repo_name = repo.rsplit("/", 1)[-1] if repo else None
    relative_cwd = derive_relative_cwd(cwd, repo_name)
    return GitContext(
        repo=repo,
        branch=branch or None,
        relativeCwd=normalize_relative_cwd(relative_cwd),
    )


_HOSTS = (("gitlab", "gitlab.com"), ("bitbucket", "bitbucket.org"), ("github", "github.com"))


def infer_git_context_from_path(cwd: str | None, branch: str | None) -> GitContext:
    """Guess ``host/org/repo`` from a checkout path laid out as ``.../github.com/org/repo/...``.

    Only the path is inspected; the directory does not need to exist.
    """
    segments = [segment for segment in (cwd or "").replace("\\", "/").split("/") if segment]
    for index, segment in enumerate(segments):
        lowered = segment.lower()
        host = next((name for marker, name in _HOSTS if marker in lowered), None)
        if host is None:
            continue
        if index + 2 >= len(segments):
            break
        org = segments[index + 1]
        repo_name = re.sub(r"\.git$", "", segments[index + 2], flags=re.IGNORECASE)
        remainder = "/".join(segments[index + 3:]) or "."
        return GitContext(
            repo=f"{host}/{org}/{repo_name}",
            branch=branch or None,
            relativeCwd=normalize_relative_cwd(remainder),
        )
    return GitContext(branch=branch or None)
