"""Shared test helpers: git commit shortcut and an in-memory GitProvider."""
from __future__ import annotations

import hashlib
import threading
import time
from collections import deque
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from git import Actor, Repo

from gdm.git_provider import (
    CommitMessage,
    GitOperationError,
    Reference,
    RepositoryError,
    parse_ref_path,
)

AUTHOR = Actor("Test", "test@example.com")

MUTATING_CALLS = {"push", "merge_fast_forward", "create_branch", "checkout", "reset_hard"}


def commit_file(repo: Repo, name: str, content: str, message: str) -> str:
    """Write a file, commit it on the current branch, return the sha."""
    path = Path(repo.working_tree_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.index.add([name])
    return repo.index.commit(message, author=AUTHOR, committer=AUTHOR).hexsha


class FakeGitProvider:
    """GitProvider over an in-memory commit graph.

    ``server`` holds the branches on the remote, ``tracking`` the
    remote-tracking refs (updated by fetch and push), ``local`` the local
    branches. ``fail`` maps a method name to an error message to raise.
    ``unborn`` makes HEAD unresolvable, as on a branch with no commits.
    """

    def __init__(self, remote: str = "origin"):
        self._remote = remote
        self._counter = 0
        self.commits: Dict[str, Tuple[Tuple[str, ...], str]] = {}
        self.local: Dict[str, str] = {}
        self.tracking: Dict[str, str] = {}
        self.server: Dict[str, str] = {}
        self.head: str = "main"
        self.detached = False
        self.unborn = False
        self.dirty = False
        self.fail: Dict[str, str] = {}
        self.fetch_delay = 0.0
        self.fetches_in_flight = 0
        self.max_fetches_in_flight = 0
        self._in_flight_lock = threading.Lock()
        self.calls: List[Tuple[str, tuple]] = []

        root = self.commit("Initial commit")
        self.local["main"] = root
        self.server["main"] = root
        self.tracking["main"] = root

    # -- graph building -------------------------------------------------

    def commit(self, message: str, *parents: str) -> str:
        self._counter += 1
        sha = hashlib.sha1(f"{self._counter}:{message}".encode()).hexdigest()
        self.commits[sha] = (tuple(parents), message)
        return sha

    def chain(self, start: str, *messages: str) -> str:
        sha = start
        for message in messages:
            sha = self.commit(message, sha)
        return sha

    def mutating_calls(self) -> List[str]:
        return [name for name, _ in self.calls if name in MUTATING_CALLS]

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if name in self.fail:
            raise GitOperationError(name, self.fail[name])

    def _ancestors(self, sha: str) -> set:
        seen = set()
        queue = deque([sha])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.commits[current][0])
        return seen

    def _sha_of(self, target: str) -> str:
        parsed = parse_ref_path(target, self._remote)
        if parsed is not None:
            name, remote = parsed
            table = self.tracking if remote else self.local
            if name not in table:
                raise GitOperationError("rev-parse", f"unknown ref {target}")
            return table[name]
        if target in self.local:
            return self.local[target]
        if target in self.commits:
            return target
        raise GitOperationError("rev-parse", f"unknown revision {target}")

    # -- GitProvider ----------------------------------------------------

    @property
    def remote_name(self) -> str:
        return self._remote

    def fetch(self) -> None:
        with self._in_flight_lock:
            self.fetches_in_flight += 1
            self.max_fetches_in_flight = max(self.max_fetches_in_flight, self.fetches_in_flight)
        try:
            if self.fetch_delay:
                time.sleep(self.fetch_delay)
            self._record("fetch")
            self.tracking = dict(self.server)
        finally:
            with self._in_flight_lock:
                self.fetches_in_flight -= 1

    def resolve_ref(self, path: str) -> Optional[Reference]:
        parsed = parse_ref_path(path, self._remote)
        if parsed is None:
            return None
        name, remote = parsed
        table = self.tracking if remote else self.local
        if name not in table:
            return None
        return Reference(name=name, commit=table[name], remote=remote)

    def merge_fast_forward(self, local: str, source: str) -> None:
        self._record("merge_fast_forward", local, source)
        target = self._sha_of(source)
        if self.local[local] not in self._ancestors(target):
            raise GitOperationError("fast-forward", "Not possible to fast-forward, aborting.")
        self.local[local] = target

    def push(self, name: str) -> None:
        self._record("push", name)
        if name not in self.local:
            raise GitOperationError("push", f"src refspec {name} does not match any")
        sha = self.local[name]
        current = self.server.get(name)
        if current is not None and current not in self._ancestors(sha):
            raise GitOperationError("push", "! [rejected] (non-fast-forward)")
        self.server[name] = sha
        self.tracking[name] = sha

    def create_branch(self, name: str, at_commit: str) -> Reference:
        self._record("create_branch", name, at_commit)
        if name in self.local:
            raise GitOperationError("create-branch", f"a branch named '{name}' already exists")
        self.local[name] = at_commit
        return Reference(name=name, commit=at_commit)

    def checkout(self, target: str) -> None:
        self._record("checkout", target)
        if target in self.local:
            self.head, self.detached = target, False
        elif target in self.commits:
            self.head, self.detached = target, True
        else:
            raise GitOperationError("checkout", f"pathspec '{target}' did not match")

    def head_commit(self) -> str:
        if self.unborn:
            raise RepositoryError("HEAD does not point at a commit")
        return self.head if self.detached else self.local[self.head]

    def current_branch(self) -> Optional[Reference]:
        if self.detached or self.unborn:
            return None
        return Reference(name=self.head, commit=self.local[self.head])

    def is_dirty(self) -> bool:
        return self.dirty

    def reset_hard(self, commit: str) -> None:
        self._record("reset_hard", commit)
        if self.detached:
            self.head = commit
        else:
            self.local[self.head] = commit

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return ancestor in self._ancestors(descendant)

    def log_range(self, from_ref: str, to_ref: str, exclude_merges: bool = True) -> Iterator[CommitMessage]:
        excluded = self._ancestors(self._sha_of(from_ref))
        for sha in sorted(self._ancestors(self._sha_of(to_ref)) - excluded):
            parents, message = self.commits[sha]
            if exclude_merges and len(parents) > 1:
                continue
            yield CommitMessage(hexsha=sha, message=message)
