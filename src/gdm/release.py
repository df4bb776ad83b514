"""Release assembler: title, description and pull-request payload."""

from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .config_schema import ReleaseConfig
from .context import ReleaseContext
from .git_provider import local_ref_path
from .workitems import WorkItem

TRUNCATION_MARKER = "\n\n... (truncated)"


class PullRequestPayload(BaseModel):
    source_branch: str
    target_branch: str
    title: str
    description: str
    is_draft: bool = False
    work_items: List[WorkItem] = Field(default_factory=list)

    def to_api(self) -> Dict[str, Any]:
        return {
            "sourceRefName": local_ref_path(self.source_branch),
            "targetRefName": local_ref_path(self.target_branch),
            "title": self.title,
            "description": self.description,
            "isDraft": self.is_draft,
            "workItemRefs": [
                {"id": str(item.id), "url": item.url} for item in self.work_items
            ],
        }


class ReleaseAssembler:
    """Turns a reconciled release context into pull-request text."""

    def __init__(self, config: ReleaseConfig, today: Optional[date] = None):
        self._config = config
        self._today = today

    def build_title(self, context: ReleaseContext) -> str:
        today = self._today or date.today()
        return self._config.title_template.format(
            date=today.isoformat(),
            base=context.base_name,
            target=context.target_name,
            ahead=context.ahead,
        )

    def build_description(
        self, context: ReleaseContext, work_items: Optional[Sequence[WorkItem]] = None
    ) -> str:
        items = sorted(work_items if work_items is not None else context.work_items, key=lambda w: w.id)
        noun = "commit" if context.ahead == 1 else "commits"
        lines = [f"{context.ahead} new {noun} from {context.target_name} into {context.base_name}."]
        if context.behind:
            lines.append(
                f"{context.target_name} is missing {context.behind} commit(s) from {context.base_name}."
            )
        lines.append("")

        if not context.ids:
            lines.append("No linked work items.")
        else:
            lines.append("Work items:")
            for item in items:
                detail = ", ".join(part for part in (item.work_item_type, item.state) if part)
                suffix = f" ({detail})" if detail else ""
                lines.append(f"- #{item.id} {item.title}{suffix}")

            found = {item.id for item in items}
            unresolved = [ticket for ticket in context.ids if ticket not in found]
            if unresolved:
                lines.append("")
                lines.append("Unresolved tickets:")
                lines.extend(f"- #{ticket}" for ticket in unresolved)

        return self._truncate("\n".join(lines))

    def _truncate(self, text: str) -> str:
        limit = self._config.max_description_length
        if len(text) <= limit:
            return text
        return text[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER

    def build_payload(self, context: ReleaseContext) -> PullRequestPayload:
        title = context.title or self.build_title(context)
        description = context.description or self.build_description(context)
        return PullRequestPayload(
            source_branch=context.target_name,
            target_branch=context.base_name,
            title=title,
            description=description,
            is_draft=self._config.draft,
            work_items=sorted(context.work_items, key=lambda w: w.id),
        )
