"""Branch comparison by commit ancestry."""

from __future__ import annotations

import asyncio
from enum import Enum

from .git_provider import GitProvider, Reference
from .observability import StructuredLogger


class Divergence(str, Enum):
    """Relationship of ref ``a`` to ref ``b``."""

    AHEAD = "ahead"  # b's commit is a strict ancestor of a's
    BEHIND = "behind"  # a's commit is a strict ancestor of b's
    EQUAL = "equal"  # same commit
    DIVERGED = "diverged"  # neither contains the other, including unrelated histories


class BranchComparator:
    """Classifies two resolved references by ancestry, not by timestamps."""

    def __init__(self, git: GitProvider, logger: StructuredLogger):
        self._git = git
        self._log = logger

    async def compare(self, a: Reference, b: Reference) -> Divergence:
        if a.commit == b.commit:
            result = Divergence.EQUAL
        elif await asyncio.to_thread(self._git.is_ancestor, b.commit, a.commit):
            result = Divergence.AHEAD
        elif await asyncio.to_thread(self._git.is_ancestor, a.commit, b.commit):
            result = Divergence.BEHIND
        else:
            result = Divergence.DIVERGED
        self._log.debug(
            f"{a.display_name}@{a.short_commit} is {result.value} "
            f"{b.display_name}@{b.short_commit}"
        )
        return result
