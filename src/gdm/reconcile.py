"""Branch reconciliation state machine.

Given a branch name, make sure a local branch of that name exists and
matches its remote counterpart, moving refs only in the direction that
cannot lose commits:

    existence     comparison   action
    -----------   ----------   ------------------
    neither       -            fail (not found)
    local only    -            push
    remote only   -            create local from remote
    both          ahead        push
    both          behind       fast-forward
    both          equal        nothing
    both          diverged     fail (manual fix)

The table lives in ``plan_transition`` and has no git dependency. The
engine diagnoses the current state, asks the table for an action, runs it
through the synchronizer and re-resolves refs afterwards. A fetch of the
remote must already have happened for the run.

Failures come back as a ``ReconcileOutcome`` carrying a ``ReconcileError``
rather than being raised, so callers decide whether to abort.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .compare import BranchComparator, Divergence
from .git_provider import Reference
from .observability import StructuredLogger
from .refs import ReferenceResolver, ResolveResult
from .sync import RemoteSynchronizer, SyncError, SyncResult


class ExistenceState(str, Enum):
    """Where a branch name resolves at a given instant."""

    LOCAL_ONLY = "local_only"
    REMOTE_ONLY = "remote_only"
    BOTH = "both"
    NEITHER = "neither"


class Action(str, Enum):
    """What the engine does for a diagnosed state."""

    PUSH = "push"
    CREATE_FROM_REMOTE = "create_from_remote"
    FAST_FORWARD = "fast_forward"
    NOOP = "noop"
    FAIL_NOT_FOUND = "fail_not_found"
    FAIL_DIVERGED = "fail_diverged"

    @property
    def is_fatal(self) -> bool:
        return self in (Action.FAIL_NOT_FOUND, Action.FAIL_DIVERGED)


def existence_state(local: bool, remote: bool) -> ExistenceState:
    if local and remote:
        return ExistenceState.BOTH
    if local:
        return ExistenceState.LOCAL_ONLY
    if remote:
        return ExistenceState.REMOTE_ONLY
    return ExistenceState.NEITHER


def plan_transition(state: ExistenceState, divergence: Optional[Divergence] = None) -> Action:
    """Pick the action for a diagnosed state.

    ``divergence`` compares local against remote-tracking and is required
    exactly when the branch exists on both sides.

    Raises:
        ValueError: BOTH without a comparison result
    """
    if state is ExistenceState.NEITHER:
        return Action.FAIL_NOT_FOUND
    if state is ExistenceState.LOCAL_ONLY:
        return Action.PUSH
    if state is ExistenceState.REMOTE_ONLY:
        return Action.CREATE_FROM_REMOTE

    if divergence is None:
        raise ValueError("A branch present on both sides needs a comparison result")
    return {
        Divergence.AHEAD: Action.PUSH,
        Divergence.BEHIND: Action.FAST_FORWARD,
        Divergence.EQUAL: Action.NOOP,
        Divergence.DIVERGED: Action.FAIL_DIVERGED,
    }[divergence]


class ReconcileError(Exception):
    """Reconciliation of one branch could not complete."""

    def __init__(
        self,
        branch: str,
        action: Action,
        message: str,
        sync_error: Optional[SyncError] = None,
    ):
        super().__init__(f"Cannot reconcile '{branch}' ({action.value}): {message}")
        self.branch = branch
        self.action = action
        self.message = message
        self.sync_error = sync_error


@dataclass(frozen=True)
class ReconcileOutcome:
    """Terminal state of one reconciliation: a reference or an error."""

    branch: str
    state: ExistenceState
    action: Action
    divergence: Optional[Divergence] = None
    reference: Optional[Reference] = None
    error: Optional[ReconcileError] = None

    @property
    def reconciled(self) -> bool:
        return self.error is None and self.reference is not None


class ReconciliationEngine:
    def __init__(
        self,
        resolver: ReferenceResolver,
        synchronizer: RemoteSynchronizer,
        comparator: BranchComparator,
        logger: StructuredLogger,
    ):
        self._resolver = resolver
        self._sync = synchronizer
        self._comparator = comparator
        self._log = logger

    async def diagnose(
        self, name: str
    ) -> tuple[ExistenceState, Optional[Divergence], ResolveResult, ResolveResult]:
        """Resolve both sides and classify them without changing anything."""
        local = await self._resolver.local(name)
        remote = await self._resolver.remote(name)
        state = existence_state(bool(local), bool(remote))
        divergence: Optional[Divergence] = None
        if state is ExistenceState.BOTH:
            divergence = await self._comparator.compare(local, remote)  # type: ignore[arg-type]
        return state, divergence, local, remote

    async def existence(self, name: str) -> ExistenceState:
        state, _, _, _ = await self.diagnose(name)
        return state

    async def reconcile(self, name: str) -> ReconcileOutcome:
        start = time.perf_counter()
        state, divergence, local, remote = await self.diagnose(name)
        action = plan_transition(state, divergence)
        self._log.debug(
            f"Diagnosed {name}",
            state=state.value,
            divergence=divergence.value if divergence else None,
            action=action.value,
            local=local.commit if local else None,
            remote=remote.commit if remote else None,
        )

        outcome = await self._execute(name, state, divergence, action, local, remote)

        self._log.action(
            "reconcile",
            outcome="ok" if outcome.reconciled else "error",
            duration_ms=(time.perf_counter() - start) * 1000.0,
            branch=name,
            state=state.value,
            action=action.value,
            commit=outcome.reference.commit if outcome.reference else None,
            error=outcome.error.message if outcome.error else None,
        )
        return outcome

    async def _execute(
        self,
        name: str,
        state: ExistenceState,
        divergence: Optional[Divergence],
        action: Action,
        local: ResolveResult,
        remote: ResolveResult,
    ) -> ReconcileOutcome:
        def failed(message: str, sync_error: Optional[SyncError] = None) -> ReconcileOutcome:
            return ReconcileOutcome(
                branch=name,
                state=state,
                action=action,
                divergence=divergence,
                error=ReconcileError(name, action, message, sync_error),
            )

        if action is Action.FAIL_NOT_FOUND:
            return failed(f"branch not found locally or on {self._resolver.remote_name}")
        if action is Action.FAIL_DIVERGED:
            return failed(
                f"local {local.commit[:8]} and {remote.commit[:8]} on "  # type: ignore[union-attr]
                f"{self._resolver.remote_name} have diverged; fast-forward impossible"
            )

        result: Optional[SyncResult] = None
        if action is Action.PUSH:
            result = await self._sync.push(name)
        elif action is Action.CREATE_FROM_REMOTE:
            result = await self._sync.create_local_from_remote(name)
        elif action is Action.FAST_FORWARD:
            result = await self._sync.fast_forward_merge(local, remote)  # type: ignore[arg-type]

        if result is not None and not result.success:
            error = result.error
            return failed(error.message if error else f"{result.operation} failed", error)

        # Fresh snapshots; anything resolved before the action is stale
        local_after = await self._resolver.local(name)
        if not local_after:
            return failed(f"{local_after.path} does not resolve after {action.value}")
        remote_after = await self._resolver.remote(name)
        if not remote_after:
            return failed(f"{remote_after.path} does not resolve after {action.value}")
        if local_after.commit != remote_after.commit:
            return failed(
                f"local {local_after.short_commit} still differs from "
                f"{remote_after.display_name} {remote_after.short_commit}"
            )

        return ReconcileOutcome(
            branch=name,
            state=state,
            action=action,
            divergence=divergence,
            reference=local_after,
        )
