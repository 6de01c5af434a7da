"""Resolve the active linear branch of a tree-shaped session log."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from agent_transcripts.date_utils import iso_to_epoch
from agent_transcripts.models import SessionTreeEntry

logger = logging.getLogger("agent_transcripts.parsers.session_tree")


@dataclass
class SessionTree:
    """Id and parent->children indexes over a flat list of tree entries."""

    entries: list[SessionTreeEntry]
    by_id: dict[str, SessionTreeEntry] = field(default_factory=dict)
    children: dict[str | None, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for entry in self.entries:
            self.by_id.setdefault(entry.id, entry)
            self.children.setdefault(entry.parentId, []).append(entry.id)

    @classmethod
    def from_records(cls, records: Iterable[Any]) -> SessionTree:
        """Index raw ``{id, parentId, timestamp, ...}`` records, skipping ones without an id."""
        entries: list[SessionTreeEntry] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            entry_id = record.get("id")
            if not isinstance(entry_id, str) or not entry_id:
                continue
            parent_id = record.get("parentId")
            timestamp = record.get("timestamp")
            entries.append(
                SessionTreeEntry(
                    id=entry_id,
                    parentId=parent_id if isinstance(parent_id, str) and parent_id else None,
                    timestamp=timestamp if isinstance(timestamp, str) else "",
                    payload=record,
                )
            )
        return cls(entries)

    def leaves(self) -> list[SessionTreeEntry]:
        return [entry for entry in self.entries if not self.children.get(entry.id)]

    def find_leaf_id(self) -> str | None:
        """Return the leaf with the latest timestamp; the first one seen wins ties."""
        latest: SessionTreeEntry | None = None
        latest_epoch = 0.0
        for entry in self.leaves():
            epoch = iso_to_epoch(entry.timestamp)
            if latest is None or epoch > latest_epoch:
                latest = entry
                latest_epoch = epoch
        return latest.id if latest else None

    def _walk_to_root(self, leaf_id: str) -> list[SessionTreeEntry]:
        path: list[SessionTreeEntry] = []
        visited: set[str] = set()
        current: str | None = leaf_id
        while current and current not in visited:
            entry = self.by_id.get(current)
            if entry is None:
                break
            visited.add(current)
            path.append(entry)
            current = entry.parentId
        if current and current in visited:
            logger.debug("Parent cycle detected at entry %s; branch truncated", current)
        return path

    def branch(self, leaf_id: str) -> list[SessionTreeEntry]:
        """Entries from the root down to ``leaf_id``."""
        return list(reversed(self._walk_to_root(leaf_id)))

    def anchor_id(self, leaf_id: str) -> str | None:
        """First entry, walking up from the leaf, whose parent has several children."""
        for entry in self._walk_to_root(leaf_id):
            if len(self.children.get(entry.parentId, [])) > 1:
                return entry.id
        return None


@dataclass
class ResolvedBranch:
    leaf_id: str
    anchor_id: str | None
    entries: list[SessionTreeEntry]

    def transcript_id(self, session_id: str) -> str:
        if self.anchor_id:
            return f"{session_id}-{self.anchor_id}"
        return session_id


def resolve_branch(records: Iterable[Any], leaf_id: str | None = None) -> ResolvedBranch | None:
    """Collapse a session forest into its current root-to-leaf branch.

    ``leaf_id`` forces a specific tip; otherwise the latest leaf is used.
    Returns None when there is nothing to resolve.
    """
    tree = SessionTree.from_records(records)
    if not tree.entries:
        return None
    chosen = leaf_id or tree.find_leaf_id()
    if not chosen:
        return None
    entries = tree.branch(chosen)
    if not entries:
        return None
    return ResolvedBranch(leaf_id=chosen, anchor_id=tree.anchor_id(chosen), entries=entries)
