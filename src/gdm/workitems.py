"""Azure DevOps work-tracking client.

Only two calls are needed for a release: look up the work items named in
commit messages and open the pull request. Work items are requested in
batches of at most 200 ids (the service limit), several batches in flight
at once, and reassembled in request order.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from .config_schema import MAX_BATCH_SIZE, WorkTrackingConfig
from .observability import StructuredLogger

if TYPE_CHECKING:
    from .release import PullRequestPayload


class WorkTrackingError(Exception):
    """The work-tracking service could not be reached or refused a call."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class WorkItem(BaseModel):
    id: int
    title: str = ""
    state: str = ""
    work_item_type: str = ""
    url: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "WorkItem":
        fields = data.get("fields") or {}
        return cls(
            id=int(data["id"]),
            title=fields.get("System.Title", ""),
            state=fields.get("System.State", ""),
            work_item_type=fields.get("System.WorkItemType", ""),
            url=data.get("url", ""),
        )


class PullRequest(BaseModel):
    pull_request_id: int
    url: str = ""
    web_url: str = ""
    status: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PullRequest":
        pr_id = int(data["pullRequestId"])
        repository = data.get("repository") or {}
        web_url = ""
        if repository.get("webUrl"):
            web_url = f"{repository['webUrl'].rstrip('/')}/pullrequest/{pr_id}"
        return cls(
            pull_request_id=pr_id,
            url=data.get("url", ""),
            web_url=web_url,
            status=data.get("status", ""),
        )


def _batches(ids: Sequence[int], size: int) -> List[List[int]]:
    return [list(ids[i:i + size]) for i in range(0, len(ids), size)]


class WorkTrackingClient:
    """Async client bound to one organization/project.

    Use as an async context manager, or call ``aclose()`` when done.
    """

    def __init__(
        self,
        config: WorkTrackingConfig,
        token: str,
        logger: StructuredLogger,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not config.enabled:
            raise ValueError("Work tracking needs an organization and a project")
        self._config = config
        self._log = logger
        self._client = httpx.AsyncClient(
            base_url=f"{config.base_url}/{quote(config.organization, safe='')}",
            auth=httpx.BasicAuth("", token),
            params={"api-version": config.api_version},
            headers={"Accept": "application/json"},
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> "WorkTrackingClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _project_path(self, project: Optional[str]) -> str:
        return quote(project or self._config.project, safe="")

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=body)
        except httpx.HTTPError as e:
            raise WorkTrackingError(f"POST {path} failed: {e}") from e
        if response.is_error:
            raise WorkTrackingError(
                f"POST {path} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        try:
            return response.json()
        except ValueError as e:
            raise WorkTrackingError(
                f"POST {path} returned invalid JSON",
                status_code=response.status_code,
                body=response.text,
            ) from e

    async def get_items_by_ids(
        self,
        ids: Sequence[int],
        error_policy: Optional[str] = None,
        project: Optional[str] = None,
    ) -> List[WorkItem]:
        """Fetch work items for ``ids``, preserving the order of ``ids``.

        With the "omit" policy the service returns null for ids it cannot
        show; those are dropped.
        """
        if not ids:
            return []

        policy = error_policy or self._config.error_policy
        path = f"/{self._project_path(project)}/_apis/wit/workitemsbatch"
        size = min(self._config.batch_size, MAX_BATCH_SIZE)
        batches = _batches(list(ids), size)
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def fetch(index: int, batch: List[int]) -> List[WorkItem]:
            async with semaphore:
                self._log.debug(f"Requesting work-item batch {index}", size=len(batch))
                data = await self._post(
                    path,
                    {"ids": batch, "errorPolicy": policy, "fields": self._config.fields},
                )
            return [WorkItem.from_api(item) for item in data.get("value", []) if item]

        # gather keeps request-index order regardless of completion order
        results = await asyncio.gather(*(fetch(i, b) for i, b in enumerate(batches)))
        items = [item for batch in results for item in batch]
        self._log.action(
            "work_items.fetch",
            requested=len(ids),
            returned=len(items),
            batches=len(batches),
        )
        return items

    async def create_pull_request(
        self, payload: "PullRequestPayload", project: Optional[str] = None
    ) -> PullRequest:
        if not self._config.repository:
            raise WorkTrackingError("No repository configured for pull requests")
        path = (
            f"/{self._project_path(project)}/_apis/git/repositories/"
            f"{quote(self._config.repository, safe='')}/pullrequests"
        )
        data = await self._post(path, payload.to_api())
        pull_request = PullRequest.from_api(data)
        self._log.action(
            "pull_request.create",
            pull_request_id=pull_request.pull_request_id,
            source=payload.source_branch,
            target=payload.target_branch,
        )
        return pull_request
