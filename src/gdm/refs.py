"""Reference resolution: does a branch exist locally, remotely, both?

Resolution never mutates anything and never fetches. Absence is an
ordinary answer (False / ``RefNotFound``); only unreadable ref storage
escapes as ``RepositoryError``.
"""

from __future__ import annotations

import asyncio
import re
from typing import Union

from .git_provider import GitProvider, Reference, local_ref_path, remote_ref_path
from .observability import StructuredLogger

# Branch name constraints (git refname rules)
MAX_BRANCH_LENGTH = 255
# Each tuple is (compiled_pattern, human_readable_message)
_BRANCH_VALIDATION_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r'\.\.+'), 'contains consecutive dots (..)'),
    (re.compile(r'^-'), 'starts with hyphen (potential flag injection)'),
    (re.compile(r'^\.|\.$'), 'starts or ends with dot'),
    (re.compile(r'\.lock$'), 'ends with .lock (reserved suffix)'),
    (re.compile(r'@\{'), 'contains reflog syntax (@{)'),
    (re.compile(r'[\x00-\x1f\x7f]'), 'contains control characters'),
    (re.compile(r'[~^:?*\[\]\\]'), 'contains invalid git characters (~^:?*[]\\)'),
    (re.compile(r'\s'), 'contains whitespace'),
]


def validate_branch_name(branch: str) -> None:
    """Validate branch name to prevent injection and ensure git compatibility.

    Raises:
        ValueError: If branch name is invalid or potentially dangerous
    """
    if not branch:
        raise ValueError("Branch name cannot be empty")

    if len(branch) > MAX_BRANCH_LENGTH:
        raise ValueError(
            f"Branch name too long: {len(branch)} chars (max {MAX_BRANCH_LENGTH})"
        )

    for compiled_pattern, message in _BRANCH_VALIDATION_RULES:
        if compiled_pattern.search(branch):
            raise ValueError(f"Branch name '{branch}' {message}")

    if "//" in branch:
        raise ValueError(f"Branch name '{branch}' contains consecutive slashes")

    if branch.endswith("/") or branch.startswith("/"):
        raise ValueError(f"Branch name '{branch}' cannot start or end with slash")

    if branch == "@":
        raise ValueError("Branch name '@' is reserved")


class RefNotFound:
    """Distinguished result for a ref that does not resolve."""

    __slots__ = ("path",)

    def __init__(self, path: str):
        self.path = path

    def __bool__(self) -> bool:
        return False

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RefNotFound) and other.path == self.path

    def __hash__(self) -> int:
        return hash(("RefNotFound", self.path))

    def __repr__(self) -> str:
        return f"RefNotFound({self.path!r})"


ResolveResult = Union[Reference, RefNotFound]


class ReferenceResolver:
    """Answers existence questions against live ref storage."""

    def __init__(self, git: GitProvider, logger: StructuredLogger):
        self._git = git
        self._log = logger

    @property
    def remote_name(self) -> str:
        return self._git.remote_name

    async def resolve(self, ref_path: str) -> ResolveResult:
        """Resolve a full ref path to a fresh Reference snapshot.

        Raises:
            RepositoryError: ref storage could not be read
        """
        ref = await asyncio.to_thread(self._git.resolve_ref, ref_path)
        if ref is None:
            self._log.debug(f"{ref_path} does not resolve")
            return RefNotFound(ref_path)
        return ref

    async def local(self, name: str) -> ResolveResult:
        if not self._is_valid(name):
            return RefNotFound(local_ref_path(name))
        return await self.resolve(local_ref_path(name))

    async def remote(self, name: str) -> ResolveResult:
        if not self._is_valid(name):
            return RefNotFound(remote_ref_path(self.remote_name, name))
        return await self.resolve(remote_ref_path(self.remote_name, name))

    async def exists_locally(self, name: str) -> bool:
        return bool(await self.local(name))

    async def exists_on_remote(self, name: str) -> bool:
        """True iff ``<remote>/<name>`` resolves. Callers fetch first."""
        return bool(await self.remote(name))

    def _is_valid(self, name: str) -> bool:
        try:
            validate_branch_name(name)
        except ValueError as e:
            self._log.debug(f"Invalid branch name treated as absent: {e}")
            return False
        return True
