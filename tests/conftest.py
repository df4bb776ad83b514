from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import pytest
from git import Repo

_SRC = Path(__file__).resolve().parents[1] / "src"
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))
os.environ.setdefault("PYTHONPATH", str(_SRC))

from helpers import commit_file  # noqa: E402


@pytest.fixture(scope="session")
def anyio_backend():
    """Run async tests on asyncio; GitPython calls go through asyncio.to_thread."""
    return "asyncio"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep user config, credentials and log files out of the real home."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for key in list(os.environ):
        if key.startswith("GDM_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GDM_LOG_DISABLE_FILE", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    # Merge commits made by git itself need an identity
    for role in ("AUTHOR", "COMMITTER"):
        monkeypatch.setenv(f"GIT_{role}_NAME", "Test")
        monkeypatch.setenv(f"GIT_{role}_EMAIL", "test@example.com")

    from gdm import observability

    logging.getLogger(observability.LOGGER_NAME).handlers.clear()
    observability._logger_initialized = False
    observability._session_start = None
    yield home
    logging.getLogger(observability.LOGGER_NAME).handlers.clear()
    observability._logger_initialized = False


@pytest.fixture
def logger():
    from gdm.observability import StructuredLogger

    log = logging.getLogger("gdm.tests")
    log.setLevel(logging.DEBUG)
    return StructuredLogger(log)


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    """Bare remote seeded with a main branch."""
    remote_path = tmp_path / "origin.git"
    bare = Repo.init(remote_path, bare=True)

    seed_path = tmp_path / "seed"
    seed = Repo.init(seed_path)
    commit_file(seed, "README.md", "seed\n", "Initial commit")
    seed.git.branch("-M", "main")
    seed.create_remote("origin", remote_path.as_posix())
    seed.git.push("origin", "main:main")
    bare.git.symbolic_ref("HEAD", "refs/heads/main")
    return remote_path


@pytest.fixture
def work(origin: Path, tmp_path: Path) -> Repo:
    """Working clone of ``origin`` on main."""
    return Repo.clone_from(origin.as_posix(), tmp_path / "work", branch="main")


@pytest.fixture
def other(origin: Path, tmp_path: Path) -> Repo:
    """A second clone used to move the remote behind ``work``'s back."""
    return Repo.clone_from(origin.as_posix(), tmp_path / "other", branch="main")
