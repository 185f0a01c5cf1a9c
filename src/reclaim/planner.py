from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from reclaim.grouper import order_members
from reclaim.models import (
    DELETE,
    IGNORED,
    SKIP,
    TEMPORARY,
    CleanupAction,
    Classification,
    DuplicateGroup,
    FileEntry,
    Plan,
    bytes_released,
)

TEMPORARY_REASON = "temporary"
DUPLICATE_REASON = "duplicate-of"
KEPT_REASON = "kept-original"
UNIQUE_REASON = "unique"
HARDLINK_REASON = "hardlink-of"


class CleanupPlanner:
    """Turn classifications and duplicate groups into an ordered plan.

    A path appears in the plan at most once. Temporary files are deleted by
    the temporary rule and removed from any duplicate group before the keep
    selection runs, so they can never be picked as the surviving copy. Extra
    hard links follow their representative: they are deleted with it, or
    skipped when it stays.
    """

    logger = logging.getLogger("reclaim.CleanupPlanner")

    def __init__(self, root: Path, keep_strategy: str = "oldest") -> None:
        self.root = root
        self.keep_strategy = keep_strategy

    def build_plan(
        self,
        classified: Sequence[tuple[FileEntry, Classification]],
        groups: Iterable[DuplicateGroup],
        linked: Iterable[tuple[FileEntry, FileEntry]] = (),
    ) -> Plan:
        actions: dict[str, CleanupAction] = {}

        for entry, label in classified:
            if label.kind == TEMPORARY:
                actions[entry.rel_path] = CleanupAction(DELETE, entry, TEMPORARY_REASON)

        group_count = 0
        for group in groups:
            members = [m for m in group.members if m.rel_path not in actions]
            if len(members) < 2:
                for member in members:
                    actions[member.rel_path] = CleanupAction(SKIP, member, UNIQUE_REASON)
                continue
            group_count += 1
            keep, *duplicates = order_members(members, self.keep_strategy)
            actions[keep.rel_path] = CleanupAction(SKIP, keep, KEPT_REASON)
            for duplicate in duplicates:
                actions[duplicate.rel_path] = CleanupAction(
                    DELETE, duplicate, f"{DUPLICATE_REASON}:{keep.rel_path}", keep=keep
                )

        for link, representative in linked:
            if link.rel_path in actions:
                continue
            reason = f"{HARDLINK_REASON}:{representative.rel_path}"
            planned = actions.get(representative.rel_path)
            if planned is not None and planned.action == DELETE:
                # the inode is only released once every link to it goes
                actions[link.rel_path] = CleanupAction(DELETE, link, reason, keep=planned.keep)
            else:
                actions[link.rel_path] = CleanupAction(SKIP, link, reason)

        for entry, label in classified:
            if entry.rel_path in actions:
                continue
            reason = label.reason if label.kind == IGNORED else UNIQUE_REASON
            actions[entry.rel_path] = CleanupAction(SKIP, entry, reason)

        ordered = sorted(actions.values(), key=lambda a: (a.action != DELETE, a.path))
        deletions = [a for a in ordered if a.action == DELETE]
        summary = {
            "files": len(ordered),
            "deletions": len(deletions),
            "duplicate_groups": group_count,
            "bytes_to_free": bytes_released(ordered),
            "by_reason": _summarize_by_reason(ordered),
        }
        self.logger.info(
            "Planned %d deletion(s) across %d file(s), %d duplicate group(s)",
            len(deletions),
            len(ordered),
            group_count,
        )
        return Plan(
            root=str(self.root),
            generated_at=datetime.now(timezone.utc).isoformat(),
            actions=ordered,
            summary=summary,
        )


def _summarize_by_reason(actions: Iterable[CleanupAction]) -> dict[str, int]:
    summary = Counter(f"{a.action}:{a.reason.split(':', 1)[0]}" for a in actions)
    return dict(sorted(summary.items()))
