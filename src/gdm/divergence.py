"""Commit counts and ticket ids between two reconciled branches."""

from __future__ import annotations

import asyncio
import re
from typing import Iterable, Iterator, List

from .git_provider import CommitMessage, GitProvider, Reference
from .observability import StructuredLogger

# "#" followed by 3 or 4 digits, not the prefix of a longer number
TICKET_PATTERN = re.compile(r"#(\d{3,4})(?!\d)")


def ticket_ids_in(messages: Iterable[CommitMessage]) -> Iterator[int]:
    """Yield ticket ids in log order, duplicates included."""
    for commit in messages:
        for match in TICKET_PATTERN.finditer(commit.message):
            yield int(match.group(1))


class DivergenceReporter:
    """Reads the log between ``base`` and ``target``.

    Both references must come from a successful reconciliation. Merge
    commits are ignored throughout.
    """

    def __init__(self, git: GitProvider, logger: StructuredLogger):
        self._git = git
        self._log = logger

    def _count(self, from_ref: Reference, to_ref: Reference) -> int:
        return sum(1 for _ in self._git.log_range(from_ref.path, to_ref.path, exclude_merges=True))

    async def count_ahead(self, base: Reference, target: Reference) -> int:
        """Commits on ``target`` that ``base`` does not have."""
        return await asyncio.to_thread(self._count, base, target)

    async def count_behind(self, base: Reference, target: Reference) -> int:
        """Commits on ``base`` that ``target`` does not have."""
        return await asyncio.to_thread(self._count, target, base)

    def iter_ticket_ids(self, base: Reference, target: Reference) -> Iterator[int]:
        """Lazily scan ``base..target`` for ticket markers."""
        return ticket_ids_in(self._git.log_range(base.path, target.path, exclude_merges=True))

    async def extract_ticket_ids(self, base: Reference, target: Reference) -> List[int]:
        """Unique ticket ids referenced in ``base..target``, ascending."""
        ids = await asyncio.to_thread(lambda: sorted(set(self.iter_ticket_ids(base, target))))
        if ids:
            self._log.info(
                f"Found {len(ids)} ticket id(s) between {base.name} and {target.name}",
                ids=ids,
            )
        else:
            self._log.warning(f"No ticket ids found between {base.name} and {target.name}")
        return ids
