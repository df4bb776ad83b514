"""Release context threaded through the pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

from .git_provider import Reference

if TYPE_CHECKING:
    from .release import PullRequestPayload
    from .workitems import PullRequest, WorkItem


@dataclass
class ReleaseContext:
    """Accumulator owned by ``ReleasePipeline``.

    Each stage fills its own fields; ordering of stages guarantees nothing
    is read before it is produced.
    """

    base_name: str
    target_name: str
    remote: str = "origin"

    # reconcile_base / reconcile_target
    base: Optional[Reference] = None
    target: Optional[Reference] = None

    # divergence
    ahead: int = 0
    behind: int = 0

    # tickets
    ids: List[int] = field(default_factory=list)

    # work_items
    work_items: List["WorkItem"] = field(default_factory=list)

    # assemble
    title: str = ""
    description: str = ""
    payload: Optional["PullRequestPayload"] = None

    # submit
    pull_request: Optional["PullRequest"] = None

    def summary(self) -> dict:
        return {
            "base": self.base_name,
            "target": self.target_name,
            "base_commit": self.base.commit if self.base else None,
            "target_commit": self.target.commit if self.target else None,
            "ahead": self.ahead,
            "behind": self.behind,
            "ids": list(self.ids),
            "work_items": len(self.work_items),
            "title": self.title,
            "pull_request": self.pull_request.url if self.pull_request else None,
        }
