"""Remote synchronization primitives: fetch, push, fast-forward, create.

Each primitive reports a ``SyncResult`` instead of raising. A refused
operation is an expected outcome the reconciliation engine has to decide
about. Only unreadable ref storage (``RepositoryError``) escapes. A HEAD
that create-local cannot record (unborn branch) is a failed result.

Nothing here retries. A push that timed out may or may not have landed on
the remote, and the only safe way to find out is to fetch and re-resolve.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .git_provider import GitOperationError, GitProvider, Reference, RepositoryError
from .observability import StructuredLogger
from .refs import ReferenceResolver, validate_branch_name

OP_FETCH = "fetch"
OP_PUSH = "push"
OP_FAST_FORWARD = "fast-forward"
OP_CREATE_LOCAL = "create-local"


class SyncError(Exception):
    """A fetch, push, fast-forward or branch creation was refused."""

    def __init__(self, operation: str, message: str, branch: Optional[str] = None):
        target = f" {branch}" if branch else ""
        super().__init__(f"{operation}{target} failed: {message}")
        self.operation = operation
        self.branch = branch
        self.message = message


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one synchronization primitive."""

    success: bool
    operation: str
    branch: Optional[str] = None
    reference: Optional[Reference] = None
    error: Optional[SyncError] = None

    @classmethod
    def ok(
        cls, operation: str, branch: Optional[str] = None, reference: Optional[Reference] = None
    ) -> "SyncResult":
        return cls(success=True, operation=operation, branch=branch, reference=reference)

    @classmethod
    def failed(cls, operation: str, message: str, branch: Optional[str] = None) -> "SyncResult":
        return cls(
            success=False,
            operation=operation,
            branch=branch,
            error=SyncError(operation, message, branch),
        )


class RemoteSynchronizer:
    """Ref-mutating primitives against the single configured remote.

    Args:
        git: Provider for the open repository
        resolver: Resolver over the same provider
        logger: Injected structured logger
        timeout: Upper bound in seconds for networked primitives (fetch,
            push). None disables the bound.
    """

    def __init__(
        self,
        git: GitProvider,
        resolver: ReferenceResolver,
        logger: StructuredLogger,
        timeout: Optional[float] = None,
    ):
        self._git = git
        self._resolver = resolver
        self._log = logger
        self._timeout = timeout

    async def _run(
        self,
        operation: str,
        branch: Optional[str],
        fn: Callable[..., Any],
        *args: Any,
        network: bool = False,
    ) -> SyncResult:
        self._log.debug(f"Starting {operation}", branch=branch)
        start = time.perf_counter()
        # The worker thread cannot be cancelled; it must finish before the
        # repository is touched again, timed out or not
        task = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            if network and self._timeout is not None:
                await asyncio.wait_for(asyncio.shield(task), self._timeout)
            else:
                await task
        except GitOperationError as e:
            result = SyncResult.failed(operation, e.message, branch)
        except asyncio.TimeoutError:
            result = SyncResult.failed(operation, f"timed out after {self._timeout}s", branch)
            await self._drain(operation, branch, task)
        else:
            result = SyncResult.ok(operation, branch)
        self._log.action(
            f"sync.{operation}",
            outcome="ok" if result.success else "error",
            duration_ms=(time.perf_counter() - start) * 1000.0,
            branch=branch,
            error=result.error.message if result.error else None,
        )
        return result

    async def _drain(self, operation: str, branch: Optional[str], task: asyncio.Future) -> None:
        """Wait out a primitive that outlived its timeout."""
        try:
            await task
        except GitOperationError as e:
            self._log.warning(f"{operation} finished after timeout", branch=branch, error=e.message)
        else:
            self._log.warning(f"{operation} finished after timeout", branch=branch)

    def _invalid(self, operation: str, name: str) -> Optional[SyncResult]:
        try:
            validate_branch_name(name)
        except ValueError as e:
            return SyncResult.failed(operation, str(e), name)
        return None

    async def fetch_all(self) -> SyncResult:
        """Update every remote-tracking ref from the configured remote."""
        return await self._run(OP_FETCH, None, self._git.fetch, network=True)

    async def push(self, name: str) -> SyncResult:
        """Push local ``name`` to remote ``name``; never forced."""
        invalid = self._invalid(OP_PUSH, name)
        if invalid:
            return invalid
        return await self._run(OP_PUSH, name, self._git.push, name, network=True)

    async def fast_forward_merge(self, local: Reference, remote_tracking: Reference) -> SyncResult:
        """Advance ``local`` to ``remote_tracking``.

        Fails rather than merging when ``local`` is not an ancestor of the
        remote-tracking tip.
        """
        if local.is_remote or not remote_tracking.is_remote:
            return SyncResult.failed(
                OP_FAST_FORWARD,
                f"expected local and remote-tracking refs, got {local.path} and {remote_tracking.path}",
                local.name,
            )
        return await self._run(
            OP_FAST_FORWARD,
            local.name,
            self._git.merge_fast_forward,
            local.name,
            remote_tracking.path,
        )

    async def create_local_from_remote(self, name: str) -> SyncResult:
        """Create local ``name`` at the ``<remote>/<name>`` tip.

        The active branch (or detached commit) is saved first and checked
        out again as the last step, whether creation succeeded or not.
        """
        invalid = self._invalid(OP_CREATE_LOCAL, name)
        if invalid:
            return invalid

        remote_ref = await self._resolver.remote(name)
        if not remote_ref:
            return SyncResult.failed(OP_CREATE_LOCAL, f"{remote_ref.path} does not exist", name)

        if await asyncio.to_thread(self._git.is_dirty):
            return SyncResult.failed(
                OP_CREATE_LOCAL, "working tree has uncommitted changes", name
            )

        try:
            original = await asyncio.to_thread(self._git.current_branch)
            if original is not None:
                restore_target = original.name
            else:
                restore_target = await asyncio.to_thread(self._git.head_commit)
        except RepositoryError as e:
            return SyncResult.failed(OP_CREATE_LOCAL, f"cannot record current checkout: {e}", name)
        self._log.debug(
            f"Creating {name} at {remote_ref.short_commit}",
            restore=restore_target,
        )

        failure: Optional[GitOperationError] = None
        restore_failure: Optional[GitOperationError] = None
        try:
            await asyncio.to_thread(self._git.create_branch, name, remote_ref.commit)
            await asyncio.to_thread(self._git.checkout, name)
            await asyncio.to_thread(self._git.reset_hard, remote_ref.commit)
        except GitOperationError as e:
            failure = e
        finally:
            try:
                await asyncio.to_thread(self._git.checkout, restore_target)
            except GitOperationError as e:
                restore_failure = e
                self._log.error(
                    f"Could not restore {restore_target} after creating {name}",
                    error=e.message,
                )

        if failure is not None:
            result = SyncResult.failed(OP_CREATE_LOCAL, f"{failure.operation}: {failure.message}", name)
        elif restore_failure is not None:
            result = SyncResult.failed(
                OP_CREATE_LOCAL,
                f"created but could not restore {restore_target}: {restore_failure.message}",
                name,
            )
        else:
            created = await self._resolver.local(name)
            if created:
                result = SyncResult.ok(OP_CREATE_LOCAL, name, created)
            else:
                result = SyncResult.failed(OP_CREATE_LOCAL, f"{created.path} missing after creation", name)

        self._log.action(
            f"sync.{OP_CREATE_LOCAL}",
            outcome="ok" if result.success else "error",
            branch=name,
            commit=remote_ref.commit,
            error=result.error.message if result.error else None,
        )
        return result
