"""Tests for commit counting and ticket id extraction."""

from __future__ import annotations

import logging

import pytest
from git import Repo

from gdm.divergence import DivergenceReporter, ticket_ids_in
from gdm.git_provider import CommitMessage, GitPythonProvider, Reference

from helpers import FakeGitProvider, commit_file


def _messages(*texts):
    return [CommitMessage(hexsha=str(i), message=text) for i, text in enumerate(texts)]


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Fix login #123", [123]),
        ("Refs #4567 and #890", [4567, 890]),
        ("Too short #12", []),
        ("Too long #12345", []),
        ("No marker 1234", []),
        ("Adjacent #123#456", [123, 456]),
        ("Punctuated (#321).", [321]),
        ("Line one\n\nBody mentions #999", [999]),
    ],
)
def test_ticket_pattern(text, expected):
    assert list(ticket_ids_in(_messages(text))) == expected


def test_ticket_ids_keep_duplicates_in_order():
    assert list(ticket_ids_in(_messages("#200 a", "#100 b", "#200 c"))) == [200, 100, 200]


@pytest.fixture
def release_repo(work: Repo):
    """master at one commit; feature three commits ahead of it."""
    work.git.branch("-m", "main", "master")
    master = work.head.commit.hexsha
    work.git.checkout("-b", "feature")
    commit_file(work, "a.txt", "a\n", "Add login form #123")
    commit_file(work, "b.txt", "b\n", "Validate login input #4567")
    tip = commit_file(work, "c.txt", "c\n", "Polish login copy #123")
    work.git.checkout("master")
    return work, Reference("master", master), Reference("feature", tip)


@pytest.mark.anyio
async def test_release_scenario(logger, release_repo):
    work, master, feature = release_repo
    reporter = DivergenceReporter(GitPythonProvider(work), logger)

    assert await reporter.count_ahead(master, feature) == 3
    assert await reporter.count_behind(master, feature) == 0
    assert await reporter.extract_ticket_ids(master, feature) == [123, 4567]


@pytest.mark.anyio
async def test_counts_are_symmetric(logger, release_repo):
    work, master, feature = release_repo
    reporter = DivergenceReporter(GitPythonProvider(work), logger)

    assert await reporter.count_ahead(feature, master) == await reporter.count_behind(master, feature)
    assert await reporter.count_behind(feature, master) == await reporter.count_ahead(master, feature)


@pytest.mark.anyio
async def test_equal_refs_have_nothing_between(logger, release_repo):
    work, master, _ = release_repo
    reporter = DivergenceReporter(GitPythonProvider(work), logger)

    assert await reporter.count_ahead(master, master) == 0
    assert await reporter.extract_ticket_ids(master, master) == []


@pytest.mark.anyio
async def test_merge_commits_are_excluded(logger):
    git = FakeGitProvider()
    root = git.local["main"]
    left = git.chain(root, "left #111")
    right = git.chain(root, "right #222")
    merge = git.commit("Merge branch 'right' #333", left, right)
    reporter = DivergenceReporter(git, logger)

    base, target = Reference("main", root), Reference("release", merge)
    assert await reporter.count_ahead(base, target) == 2
    assert await reporter.extract_ticket_ids(base, target) == [111, 222]


@pytest.mark.anyio
async def test_real_merge_commits_are_excluded(logger, release_repo):
    work, master, feature = release_repo
    work.git.checkout("-b", "side", master.commit)
    commit_file(work, "side.txt", "s\n", "Side fix #777")
    work.git.checkout("feature")
    work.git.merge("--no-ff", "-m", "Merge side #888", "side")
    tip = Reference("feature", work.head.commit.hexsha)

    reporter = DivergenceReporter(GitPythonProvider(work), logger)

    assert await reporter.count_ahead(master, tip) == 4
    assert await reporter.extract_ticket_ids(master, tip) == [123, 777, 4567]


@pytest.mark.anyio
async def test_no_tickets_logs_warning(logger, caplog):
    git = FakeGitProvider()
    root = git.local["main"]
    tip = git.chain(root, "chore: bump deps")
    reporter = DivergenceReporter(git, logger)

    with caplog.at_level(logging.WARNING, logger="gdm.tests"):
        ids = await reporter.extract_ticket_ids(Reference("main", root), Reference("rel", tip))

    assert ids == []
    assert "No ticket ids" in caplog.text


def test_iter_ticket_ids_is_lazy(logger):
    git = FakeGitProvider()
    root = git.local["main"]
    tip = git.chain(root, "a #101", "b #102")
    reporter = DivergenceReporter(git, logger)

    iterator = reporter.iter_ticket_ids(Reference("main", root), Reference("rel", tip))

    assert git.calls == []
    assert sorted(iterator) == [101, 102]
