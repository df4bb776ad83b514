"""Release pipeline: a strict sequence of stages over one ReleaseContext.

    fetch -> reconcile_base -> reconcile_target -> divergence -> tickets
          -> work_items -> assemble -> submit

Every git call is awaited before the next one starts; the repository
handle is never used by two operations at once. The only fan-out is the
batched work-item lookup inside ``WorkTrackingClient``.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Tuple

from .compare import BranchComparator, Divergence
from .config_schema import GdmConfig
from .context import ReleaseContext
from .divergence import DivergenceReporter
from .git_provider import GitProvider
from .observability import StructuredLogger, timeit
from .reconcile import ExistenceState, ReconcileOutcome, ReconciliationEngine
from .refs import ReferenceResolver
from .release import ReleaseAssembler
from .sync import RemoteSynchronizer, SyncResult
from .workitems import WorkTrackingClient, WorkTrackingError


class ReleaseAborted(Exception):
    """A stage hit a fatal condition; the release run stops."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.message = message


Stage = Callable[[ReleaseContext], Awaitable[None]]


class ReleasePipeline:
    """Composition root for one release run.

    Builds the resolver, synchronizer, comparator, engine and reporter over
    a single git provider, handing each its own child logger.
    """

    def __init__(
        self,
        git: GitProvider,
        config: GdmConfig,
        logger: StructuredLogger,
        *,
        work_tracking: Optional[WorkTrackingClient] = None,
        assembler: Optional[ReleaseAssembler] = None,
        dry_run: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._git = git
        self._config = config
        self._log = logger
        self._work_tracking = work_tracking
        self._assembler = assembler or ReleaseAssembler(config.release)
        self._dry_run = dry_run
        self._sleep = sleep

        self.resolver = ReferenceResolver(git, logger.child("refs"))
        self.synchronizer = RemoteSynchronizer(
            git,
            self.resolver,
            logger.child("sync"),
            timeout=config.git.timeout_seconds,
        )
        self.comparator = BranchComparator(git, logger.child("compare"))
        self.engine = ReconciliationEngine(
            self.resolver, self.synchronizer, self.comparator, logger.child("reconcile")
        )
        self.reporter = DivergenceReporter(git, logger.child("divergence"))

    def stages(self) -> List[Tuple[str, Stage]]:
        return [
            ("fetch", self._fetch),
            ("reconcile_base", self._reconcile_base),
            ("reconcile_target", self._reconcile_target),
            ("divergence", self._divergence),
            ("tickets", self._tickets),
            ("work_items", self._work_items),
            ("assemble", self._assemble),
            ("submit", self._submit),
        ]

    async def run(self, base: str, target: str) -> ReleaseContext:
        if base == target:
            raise ReleaseAborted("validate", f"base and target are both '{base}'")

        context = ReleaseContext(base_name=base, target_name=target, remote=self._git.remote_name)
        for name, stage in self.stages():
            with timeit(f"release.{name}", logger=self._log, base=base, target=target):
                await stage(context)
        self._log.action("release.done", dry_run=self._dry_run, **context.summary())
        return context

    async def inspect(
        self, name: str
    ) -> Tuple[ExistenceState, Optional[Divergence]]:
        """Fetch, then report where ``name`` exists without reconciling it."""
        await self._fetch(None)
        state, divergence, _, _ = await self.engine.diagnose(name)
        return state, divergence

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def fetch_with_retry(self) -> SyncResult:
        """Fetch, retrying per ``git.fetch_retries``.

        Fetch is the only primitive that is safe to repeat blindly.
        """
        attempts = 1 + self._config.git.fetch_retries
        result = await self.synchronizer.fetch_all()
        for attempt in range(2, attempts + 1):
            if result.success:
                break
            self._log.warning(
                f"Fetch failed, retrying ({attempt}/{attempts})",
                error=result.error.message if result.error else None,
            )
            await self._sleep(self._config.git.retry_backoff_seconds)
            result = await self.synchronizer.fetch_all()
        return result

    async def _fetch(self, context: Optional[ReleaseContext]) -> None:
        result = await self.fetch_with_retry()
        if not result.success:
            message = result.error.message if result.error else "unknown error"
            raise ReleaseAborted("fetch", f"cannot fetch {self._git.remote_name}: {message}")

    async def _reconcile(self, name: str, stage: str) -> ReconcileOutcome:
        outcome = await self.engine.reconcile(name)
        if not outcome.reconciled:
            message = str(outcome.error) if outcome.error else f"cannot reconcile '{name}'"
            self._log.error(message, branch=name, action=outcome.action.value)
            raise ReleaseAborted(stage, message)
        return outcome

    async def _reconcile_base(self, context: ReleaseContext) -> None:
        context.base = (await self._reconcile(context.base_name, "reconcile_base")).reference

    async def _reconcile_target(self, context: ReleaseContext) -> None:
        context.target = (await self._reconcile(context.target_name, "reconcile_target")).reference

    async def _divergence(self, context: ReleaseContext) -> None:
        assert context.base is not None and context.target is not None
        context.ahead = await self.reporter.count_ahead(context.base, context.target)
        context.behind = await self.reporter.count_behind(context.base, context.target)
        if context.ahead == 0:
            self._log.warning(f"{context.target_name} has no commits that {context.base_name} lacks")
        if context.behind:
            self._log.warning(
                f"{context.target_name} is {context.behind} commit(s) behind {context.base_name}"
            )

    async def _tickets(self, context: ReleaseContext) -> None:
        assert context.base is not None and context.target is not None
        context.ids = await self.reporter.extract_ticket_ids(context.base, context.target)

    async def _work_items(self, context: ReleaseContext) -> None:
        if not context.ids:
            return
        if self._work_tracking is None:
            self._log.warning("Work tracking not configured; skipping work-item lookup")
            return
        try:
            context.work_items = await self._work_tracking.get_items_by_ids(context.ids)
        except WorkTrackingError as e:
            raise ReleaseAborted("work_items", str(e))

    async def _assemble(self, context: ReleaseContext) -> None:
        if context.ahead == 0:
            raise ReleaseAborted(
                "assemble",
                f"nothing to release: {context.target_name} has no new commits over {context.base_name}",
            )
        context.title = self._assembler.build_title(context)
        context.description = self._assembler.build_description(context)
        context.payload = self._assembler.build_payload(context)

    async def _submit(self, context: ReleaseContext) -> None:
        if self._dry_run:
            self._log.info("Dry run; pull request not created", title=context.title)
            return
        if self._work_tracking is None:
            raise ReleaseAborted("submit", "work tracking is not configured; use --dry-run")
        assert context.payload is not None
        try:
            context.pull_request = await self._work_tracking.create_pull_request(context.payload)
        except WorkTrackingError as e:
            raise ReleaseAborted("submit", str(e))
