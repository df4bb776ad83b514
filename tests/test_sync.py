"""Tests for the remote synchronization primitives."""

from __future__ import annotations

from pathlib import Path

import pytest
from git import Repo

from gdm.git_provider import GitOperationError, GitPythonProvider, Reference
from gdm.refs import ReferenceResolver
from gdm.sync import OP_CREATE_LOCAL, OP_FETCH, OP_PUSH, RemoteSynchronizer

from helpers import FakeGitProvider, commit_file


def build_sync(git, logger, timeout=None):
    resolver = ReferenceResolver(git, logger)
    return RemoteSynchronizer(git, resolver, logger, timeout=timeout), resolver


def _open(work: Repo) -> GitPythonProvider:
    return GitPythonProvider.open(work.working_tree_dir)


# ----------------------------------------------------------------------
# fetch
# ----------------------------------------------------------------------


@pytest.mark.anyio
async def test_fetch_updates_tracking_refs(logger, work: Repo, other: Repo):
    tip = commit_file(other, "a.txt", "a\n", "remote change")
    other.git.push("origin", "main")

    sync, resolver = build_sync(_open(work), logger)
    result = await sync.fetch_all()

    assert result.success
    assert result.operation == OP_FETCH
    assert (await resolver.remote("main")).commit == tip


@pytest.mark.anyio
async def test_fetch_failure_is_reported(logger, work: Repo, tmp_path):
    work.remotes.origin.set_url((tmp_path / "gone.git").as_posix())

    sync, _ = build_sync(_open(work), logger)
    result = await sync.fetch_all()

    assert not result.success
    assert result.error.operation == OP_FETCH
    assert "fetch failed" in str(result.error)


@pytest.mark.anyio
async def test_fetch_timeout_is_reported(logger):
    git = FakeGitProvider()
    git.fetch_delay = 0.5

    sync, _ = build_sync(git, logger, timeout=0.05)
    result = await sync.fetch_all()

    assert not result.success
    assert "timed out" in result.error.message


@pytest.mark.anyio
async def test_fetch_timeout_waits_for_worker(logger):
    git = FakeGitProvider()
    git.fetch_delay = 0.3
    git.server["release"] = git.chain(git.local["main"], "remote")

    sync, _ = build_sync(git, logger, timeout=0.05)
    result = await sync.fetch_all()

    assert not result.success
    assert git.fetches_in_flight == 0
    assert ("fetch", ()) in git.calls
    assert "release" in git.tracking


@pytest.mark.anyio
async def test_late_fetch_failure_keeps_timeout_outcome(logger, caplog):
    git = FakeGitProvider()
    git.fetch_delay = 0.3
    git.fail["fetch"] = "could not read from remote"

    sync, _ = build_sync(git, logger, timeout=0.05)
    result = await sync.fetch_all()

    assert "timed out" in result.error.message
    assert any("finished after timeout" in r.getMessage() for r in caplog.records)


# ----------------------------------------------------------------------
# push
# ----------------------------------------------------------------------


@pytest.mark.anyio
async def test_push_publishes_new_branch(logger, work: Repo, origin):
    work.git.checkout("-b", "feature")
    tip = commit_file(work, "f.txt", "f\n", "feature #200")

    sync, resolver = build_sync(_open(work), logger)
    result = await sync.push("feature")

    assert result.success
    assert Repo(origin).heads.feature.commit.hexsha == tip
    assert (await resolver.remote("feature")).commit == tip


@pytest.mark.anyio
async def test_push_is_never_forced(logger, work: Repo, other: Repo, origin):
    remote_tip = commit_file(other, "r.txt", "r\n", "remote change")
    other.git.push("origin", "main")
    commit_file(work, "l.txt", "l\n", "local change")

    sync, _ = build_sync(_open(work), logger)
    result = await sync.push("main")

    assert not result.success
    assert result.error.operation == OP_PUSH
    assert Repo(origin).heads.main.commit.hexsha == remote_tip


@pytest.mark.anyio
async def test_push_rejects_invalid_name(logger):
    git = FakeGitProvider()
    sync, _ = build_sync(git, logger)

    result = await sync.push("--force")

    assert not result.success
    assert "hyphen" in result.error.message
    assert git.calls == []


# ----------------------------------------------------------------------
# fast-forward
# ----------------------------------------------------------------------


@pytest.mark.anyio
async def test_fast_forward_checked_out_branch(logger, work: Repo, other: Repo):
    tip = commit_file(other, "r.txt", "r\n", "remote change")
    other.git.push("origin", "main")
    git = _open(work)
    git.fetch()

    sync, resolver = build_sync(git, logger)
    result = await sync.fast_forward_merge(await resolver.local("main"), await resolver.remote("main"))

    assert result.success
    assert work.head.commit.hexsha == tip
    assert (Path(work.working_tree_dir) / "r.txt").exists()
    assert not work.is_dirty()


@pytest.mark.anyio
async def test_fast_forward_branch_not_checked_out(logger, work: Repo, other: Repo):
    base = work.head.commit.hexsha
    work.create_head("release", base)
    other.git.checkout("-b", "release")
    tip = commit_file(other, "r.txt", "r\n", "release change")
    other.git.push("origin", "release")
    git = _open(work)
    git.fetch()

    sync, resolver = build_sync(git, logger)
    result = await sync.fast_forward_merge(
        await resolver.local("release"), await resolver.remote("release")
    )

    assert result.success
    assert work.heads.release.commit.hexsha == tip
    assert work.active_branch.name == "main"
    assert work.head.commit.hexsha == base


@pytest.mark.anyio
async def test_fast_forward_refuses_divergence(logger, work: Repo, other: Repo):
    commit_file(other, "r.txt", "r\n", "remote change")
    other.git.push("origin", "main")
    local_tip = commit_file(work, "l.txt", "l\n", "local change")
    git = _open(work)
    git.fetch()

    sync, resolver = build_sync(git, logger)
    result = await sync.fast_forward_merge(await resolver.local("main"), await resolver.remote("main"))

    assert not result.success
    assert work.head.commit.hexsha == local_tip


@pytest.mark.anyio
async def test_fast_forward_requires_local_then_remote(logger):
    git = FakeGitProvider()
    sync, _ = build_sync(git, logger)
    sha = git.local["main"]

    result = await sync.fast_forward_merge(
        Reference("main", sha, remote="origin"), Reference("main", sha)
    )

    assert not result.success
    assert git.mutating_calls() == []


# ----------------------------------------------------------------------
# create local from remote
# ----------------------------------------------------------------------


@pytest.mark.anyio
async def test_create_local_from_remote_restores_branch(logger, work: Repo, other: Repo):
    other.git.checkout("-b", "target")
    tip = commit_file(other, "t.txt", "t\n", "target work")
    other.git.push("origin", "target")
    git = _open(work)
    git.fetch()

    sync, _ = build_sync(git, logger)
    result = await sync.create_local_from_remote("target")

    assert result.success
    assert result.reference == Reference("target", tip)
    assert work.active_branch.name == "main"
    assert work.heads.target.commit.hexsha == tip


@pytest.mark.anyio
async def test_create_local_from_missing_remote(logger):
    git = FakeGitProvider()
    sync, _ = build_sync(git, logger)

    result = await sync.create_local_from_remote("ghost")

    assert not result.success
    assert result.error.operation == OP_CREATE_LOCAL
    assert "refs/remotes/origin/ghost" in result.error.message
    assert git.mutating_calls() == []


@pytest.mark.anyio
async def test_create_local_refuses_dirty_tree(logger):
    git = FakeGitProvider()
    git.tracking["release"] = git.chain(git.local["main"], "remote")
    git.dirty = True
    sync, _ = build_sync(git, logger)

    result = await sync.create_local_from_remote("release")

    assert not result.success
    assert "uncommitted" in result.error.message
    assert git.mutating_calls() == []


@pytest.mark.anyio
async def test_create_local_on_unborn_head_is_reported(logger):
    git = FakeGitProvider()
    git.tracking["release"] = git.chain(git.local["main"], "remote")
    git.unborn = True
    sync, _ = build_sync(git, logger)

    result = await sync.create_local_from_remote("release")

    assert not result.success
    assert result.error.operation == OP_CREATE_LOCAL
    assert "cannot record current checkout" in result.error.message
    assert git.mutating_calls() == []


@pytest.mark.anyio
async def test_create_local_real_dirty_tree(logger, work: Repo, other: Repo):
    other.git.checkout("-b", "target")
    commit_file(other, "t.txt", "t\n", "target work")
    other.git.push("origin", "target")
    git = _open(work)
    git.fetch()
    readme = Path(work.working_tree_dir) / "README.md"
    readme.write_text(readme.read_text() + "edit\n")

    sync, _ = build_sync(git, logger)
    result = await sync.create_local_from_remote("target")

    assert not result.success
    assert "target" not in [h.name for h in work.heads]
    assert work.is_dirty()


@pytest.mark.anyio
async def test_create_local_restores_after_checkout_failure(logger):
    git = FakeGitProvider()
    git.tracking["release"] = git.chain(git.local["main"], "remote")
    git.fail["reset_hard"] = "cannot lock ref"
    sync, _ = build_sync(git, logger)

    result = await sync.create_local_from_remote("release")

    assert not result.success
    assert "cannot lock ref" in result.error.message
    assert not git.detached
    assert git.head == "main"


@pytest.mark.anyio
async def test_create_local_reports_restore_failure(logger):
    git = FakeGitProvider()
    git.tracking["release"] = git.chain(git.local["main"], "remote")
    sync, _ = build_sync(git, logger)

    original_checkout = git.checkout

    def checkout(target):
        if target == "main":
            git.calls.append(("checkout", (target,)))
            raise GitOperationError("checkout", "would be overwritten")
        original_checkout(target)

    git.checkout = checkout

    result = await sync.create_local_from_remote("release")

    assert not result.success
    assert "could not restore main" in result.error.message
