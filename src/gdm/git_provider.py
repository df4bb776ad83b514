"""Git provider capability backed by GitPython.

Everything above this module talks to git through the ``GitProvider``
protocol, so the reconciliation logic can run against an in-memory fake
as easily as against a real working copy. ``GitPythonProvider`` is the
only implementation that touches a repository on disk.

Each provider method performs exactly one git operation and raises
``GitOperationError`` when git refuses. Policy (what to do next, whether
to retry) belongs to the callers.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Optional, Protocol

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .credentials import Credential, CredentialSupplier

LOCAL_PREFIX = "refs/heads/"
REMOTE_PREFIX = "refs/remotes/"

# Read by the credential helper; never placed in the parent environment
_HELPER_USERNAME = "GDM_HELPER_USERNAME"
_HELPER_TOKEN = "GDM_HELPER_TOKEN"

# git runs "!" helpers through sh with the action ("get", "store", "erase") appended
_CREDENTIAL_HELPER = (
    "!f() { test \"$1\" = get || return 0; "
    f"echo \"username=${{{_HELPER_USERNAME}}}\"; "
    f"echo \"password=${{{_HELPER_TOKEN}}}\"; }}; f"
)


class RepositoryError(Exception):
    """The working copy cannot be opened or its ref storage cannot be read.

    Process-fatal: nothing downstream can make progress without a readable
    repository.
    """


class GitOperationError(Exception):
    """Git refused a single mutating or networked operation."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message


@dataclass(frozen=True)
class Reference:
    """A named branch and the commit it pointed to when it was resolved.

    ``remote`` is None for a local branch and the remote name for a
    remote-tracking branch. Values are snapshots; re-resolve after any
    fetch, push or merge.
    """

    name: str
    commit: str
    remote: Optional[str] = None

    @property
    def is_remote(self) -> bool:
        return self.remote is not None

    @property
    def path(self) -> str:
        if self.remote is not None:
            return f"{REMOTE_PREFIX}{self.remote}/{self.name}"
        return f"{LOCAL_PREFIX}{self.name}"

    @property
    def display_name(self) -> str:
        if self.remote is not None:
            return f"{self.remote}/{self.name}"
        return self.name

    @property
    def short_commit(self) -> str:
        return self.commit[:8]


@dataclass(frozen=True)
class CommitMessage:
    """One commit from a log range."""

    hexsha: str
    message: str

    @property
    def summary(self) -> str:
        return self.message.splitlines()[0] if self.message else ""


def local_ref_path(name: str) -> str:
    return f"{LOCAL_PREFIX}{name}"


def remote_ref_path(remote: str, name: str) -> str:
    return f"{REMOTE_PREFIX}{remote}/{name}"


def parse_ref_path(path: str, remote: str) -> Optional[tuple[str, Optional[str]]]:
    """Split a full ref path into (branch name, remote or None).

    Only ``refs/heads/*`` and ``refs/remotes/<remote>/*`` for the configured
    remote are understood; anything else returns None.
    """
    if path.startswith(LOCAL_PREFIX):
        return path[len(LOCAL_PREFIX):], None
    remote_prefix = f"{REMOTE_PREFIX}{remote}/"
    if path.startswith(remote_prefix):
        return path[len(remote_prefix):], remote
    return None


class GitProvider(Protocol):
    """Abstract git capability consumed by the reconciliation engine."""

    @property
    def remote_name(self) -> str: ...

    def fetch(self) -> None: ...

    def resolve_ref(self, path: str) -> Optional[Reference]: ...

    def merge_fast_forward(self, local: str, source: str) -> None: ...

    def push(self, name: str) -> None: ...

    def create_branch(self, name: str, at_commit: str) -> Reference: ...

    def checkout(self, target: str) -> None: ...

    def head_commit(self) -> str: ...

    def current_branch(self) -> Optional[Reference]: ...

    def is_dirty(self) -> bool: ...

    def reset_hard(self, commit: str) -> None: ...

    def is_ancestor(self, ancestor: str, descendant: str) -> bool: ...

    def log_range(
        self, from_ref: str, to_ref: str, exclude_merges: bool = True
    ) -> Iterator[CommitMessage]: ...


def _stderr_text(error: GitCommandError) -> str:
    stderr = error.stderr or ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    text = stderr.strip()
    # GitPython wraps stderr as "stderr: '...'"
    if text.startswith("stderr:"):
        text = text[len("stderr:"):].strip().strip("'")
    return text or str(error)


class GitPythonProvider:
    """GitProvider over one working copy and one configured remote.

    Owns the only handle on the repository for the lifetime of the process.
    Not thread-safe; callers serialize operations.
    """

    def __init__(
        self,
        repo: Repo,
        remote: str = "origin",
        credentials: Optional[CredentialSupplier] = None,
        timeout: Optional[float] = None,
    ):
        self._repo = repo
        self._remote = remote
        self._credentials = credentials
        self._timeout = timeout

    @classmethod
    def open(
        cls,
        path: str | Path,
        remote: str = "origin",
        credentials: Optional[CredentialSupplier] = None,
        timeout: Optional[float] = None,
    ) -> "GitPythonProvider":
        """Open the working copy at ``path`` or fail.

        Raises:
            RepositoryError: empty path, missing directory, not a git
                repository, or remote not configured
        """
        if not path or not str(path).strip():
            raise RepositoryError("Path is empty")
        root = Path(path).expanduser()
        if not root.is_dir():
            raise RepositoryError("Path doesn't exist")
        try:
            repo = Repo(root)
        except (InvalidGitRepositoryError, NoSuchPathError):
            raise RepositoryError(f"Not a git repository: {root}")
        if remote not in [r.name for r in repo.remotes]:
            raise RepositoryError(f"Remote '{remote}' is not configured")
        return cls(repo, remote, credentials, timeout)

    @property
    def remote_name(self) -> str:
        return self._remote

    @property
    def working_dir(self) -> Path:
        return Path(self._repo.working_dir)

    # ------------------------------------------------------------------
    # Environment helpers
    # ------------------------------------------------------------------

    def _auth_env(self) -> Dict[str, str]:
        env = {"GIT_TERMINAL_PROMPT": "0", "GCM_INTERACTIVE": "never"}
        credential: Optional[Credential] = self._credentials() if self._credentials else None
        if credential is not None:
            # An empty value clears helpers from system and user config
            env.update(
                GIT_CONFIG_COUNT="2",
                GIT_CONFIG_KEY_0="credential.helper",
                GIT_CONFIG_VALUE_0="",
                GIT_CONFIG_KEY_1="credential.helper",
                GIT_CONFIG_VALUE_1=_CREDENTIAL_HELPER,
            )
            env[_HELPER_USERNAME] = credential.username or "gdm"
            env[_HELPER_TOKEN] = credential.token
        return env

    def _network_kwargs(self) -> Dict[str, float]:
        if self._timeout is None:
            return {}
        return {"kill_after_timeout": self._timeout}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def resolve_ref(self, path: str) -> Optional[Reference]:
        parsed = parse_ref_path(path, self._remote)
        if parsed is None:
            return None
        name, remote = parsed
        try:
            sha = self._repo.git.rev_parse("--verify", "--quiet", f"{path}^{{commit}}")
        except GitCommandError as e:
            # --quiet keeps stderr empty for a plain missing ref
            if e.stderr:
                raise RepositoryError(f"Cannot read ref {path}: {_stderr_text(e)}") from e
            return None
        except OSError as e:
            raise RepositoryError(f"Cannot read ref {path}: {e}") from e
        return Reference(name=name, commit=sha.strip(), remote=remote)

    def head_commit(self) -> str:
        try:
            return self._repo.head.commit.hexsha
        except ValueError as e:
            raise RepositoryError(f"HEAD does not point at a commit: {e}") from e

    def current_branch(self) -> Optional[Reference]:
        if self._repo.head.is_detached:
            return None
        branch = self._repo.active_branch
        try:
            commit = branch.commit.hexsha
        except ValueError:
            # Unborn branch
            return None
        return Reference(name=branch.name, commit=commit)

    def is_dirty(self) -> bool:
        return self._repo.is_dirty(untracked_files=False)

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        try:
            return self._repo.is_ancestor(ancestor, descendant)
        except GitCommandError as e:
            raise RepositoryError(
                f"Cannot compare {ancestor} and {descendant}: {_stderr_text(e)}"
            ) from e

    def log_range(
        self, from_ref: str, to_ref: str, exclude_merges: bool = True
    ) -> Iterator[CommitMessage]:
        kwargs = {"no_merges": True} if exclude_merges else {}
        for commit in self._repo.iter_commits(f"{from_ref}..{to_ref}", **kwargs):
            message = commit.message
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            yield CommitMessage(hexsha=commit.hexsha, message=message)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def fetch(self) -> None:
        try:
            with self._repo.git.custom_environment(**self._auth_env()):
                self._repo.git.fetch("--prune", self._remote, **self._network_kwargs())
        except GitCommandError as e:
            raise GitOperationError("fetch", _stderr_text(e)) from e

    def push(self, name: str) -> None:
        refspec = f"{local_ref_path(name)}:{local_ref_path(name)}"
        try:
            with self._repo.git.custom_environment(**self._auth_env()):
                self._repo.git.push(self._remote, refspec, **self._network_kwargs())
        except GitCommandError as e:
            raise GitOperationError("push", _stderr_text(e)) from e

    def merge_fast_forward(self, local: str, source: str) -> None:
        current = self.current_branch()
        try:
            if current is not None and current.name == local:
                self._repo.git.merge("--ff-only", source)
            else:
                # Local ref update without checkout; git refuses non-fast-forward
                self._repo.git.fetch(".", f"{source}:{local_ref_path(local)}")
        except GitCommandError as e:
            raise GitOperationError("fast-forward", _stderr_text(e)) from e

    def create_branch(self, name: str, at_commit: str) -> Reference:
        try:
            head = self._repo.create_head(name, at_commit)
        except (GitCommandError, OSError, ValueError) as e:
            raise GitOperationError("create-branch", str(e)) from e
        return Reference(name=head.name, commit=head.commit.hexsha)

    def checkout(self, target: str) -> None:
        try:
            self._repo.git.checkout(target)
        except GitCommandError as e:
            raise GitOperationError("checkout", _stderr_text(e)) from e

    def reset_hard(self, commit: str) -> None:
        try:
            self._repo.git.reset("--hard", commit)
        except GitCommandError as e:
            raise GitOperationError("reset", _stderr_text(e)) from e
