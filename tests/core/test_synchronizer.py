"""Tests for RepositoryStateSynchronizer against real repositories."""

import asyncio
from unittest.mock import patch

import pytest

from gitdock.app import open_repository
from gitdock.core.events import (
    BRANCH_SWITCH_REQUESTED,
    BRANCH_SWITCH_RESOLVED,
    OPERATION_FAILED,
    STATUS_REFRESHED,
)
from gitdock.exceptions import OperationError
from gitdock.git.models import AheadBehind, StashEntry, branch_stash_message
from tests.conftest import commit_file, git, init_repo, requires_git

pytestmark = requires_git


@pytest.fixture
def events(event_bus):
    """Record every event name/data pair emitted on the bus."""
    received = []

    async def record(event):
        received.append(event)

    for name in (
        OPERATION_FAILED,
        STATUS_REFRESHED,
        BRANCH_SWITCH_REQUESTED,
        BRANCH_SWITCH_RESOLVED,
    ):
        event_bus.subscribe(name, record)
    return received


@pytest.fixture
async def sync(repo, config, event_bus):
    sync = await open_repository(repo, config, event_bus=event_bus)
    await sync.refresh()
    yield sync
    await sync.close()


@pytest.fixture
async def remote_sync(remote_pair, config, event_bus):
    _, clone = remote_pair
    sync = await open_repository(clone, config, event_bus=event_bus)
    await sync.refresh()
    yield sync
    await sync.close()


def _second_clone(origin, tmp_path):
    other = tmp_path / "other"
    git(tmp_path, "clone", "-q", str(origin), str(other))
    git(other, "config", "user.name", "Other User")
    git(other, "config", "user.email", "other@example.com")
    git(other, "config", "commit.gpgsign", "false")
    return other


class TestLoading:
    async def test_refresh_populates_state(self, events, sync):
        assert sync.current_branch == "main"
        assert [b.name for b in sync.branches] == ["main"]
        assert sync.status.is_clean
        assert "main" not in sync.branch_status
        assert sync.origin_url == ""
        assert not sync.using_snapshot
        assert any(e.name == STATUS_REFRESHED for e in events)

    async def test_load_prefers_snapshot(self, repo, config, sync):
        git(repo, "checkout", "-q", "-b", "feature")
        second = await open_repository(repo, config)
        try:
            assert await second.load() is True
            assert second.using_snapshot
            assert second.current_branch == "main"
            await second.refresh()
            assert not second.using_snapshot
            assert second.current_branch == "feature"
        finally:
            await second.close()

    async def test_load_without_snapshot(self, repo, config):
        sync = await open_repository(repo, config)
        try:
            assert await sync.load(use_snapshot=False) is True
            assert not sync.using_snapshot
            assert sync.current_branch == "main"
        finally:
            await sync.close()

    async def test_refresh_ignored_while_loading(self, sync):
        sync.loading = True
        assert await sync.refresh() is False

    async def test_failed_refresh_keeps_cache(self, sync, events):
        await sync.get_commits("main")
        error = OperationError("git status", "index locked")
        with patch.object(sync.adapter, "status", side_effect=error):
            assert await sync.refresh() is False
        assert "main" in sync.commit_cache
        assert sync.last_error == "git status: index locked"
        assert events[-1].name == OPERATION_FAILED
        assert events[-1].data["operation"] == "refresh"

    async def test_unborn_repository(self, empty_repo, config):
        sync = await open_repository(empty_repo, config)
        try:
            assert await sync.refresh() is True
            assert sync.current_branch == "main"
            assert sync.branches == []
            assert await sync.get_commits() == []
            assert sync.last_error is None
        finally:
            await sync.close()


class TestFileStatus:
    async def test_partition(self, sync, repo):
        (repo / "README.md").write_text("changed\n")
        git(repo, "add", "README.md")
        (repo / "README.md").write_text("changed again\n")
        (repo / "new.txt").write_text("new\n")
        assert await sync.refresh_file_status() is True
        assert [c.path for c in sync.staged] == ["README.md"]
        assert {c.path for c in sync.unstaged} == {"README.md", "new.txt"}
        assert sync.modified_count == 2
        assert sync.has_local_changes

    async def test_skipped_while_busy(self, sync):
        command_id = sync.adapter.tracker.begin("git fetch origin")
        try:
            assert await sync.refresh_file_status() is False
            assert [r.command for r in sync.running_commands] == ["git fetch origin"]
            assert await sync.refresh_file_status(force=True) is True
        finally:
            sync.adapter.tracker.end(command_id)

    async def test_forced_refresh_overtakes_read_in_flight(self, sync, repo):
        real_status = sync.adapter.status
        stale = await real_status()
        gate = asyncio.Event()
        calls = 0

        async def status(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                await gate.wait()
                return stale
            return await real_status(*args, **kwargs)

        with patch.object(sync.adapter, "status", side_effect=status):
            in_flight = asyncio.create_task(sync.refresh_file_status())
            for _ in range(5):
                await asyncio.sleep(0)
            assert sync.refreshing
            assert await sync.refresh_file_status() is False

            (repo / "README.md").write_text("changed\n")
            assert await sync.refresh_file_status(force=True) is True
            gate.set()
            assert await in_flight is False

        assert [c.path for c in sync.unstaged] == ["README.md"]
        assert not sync.refreshing

    async def test_cancel_clears_indicator(self, sync):
        sync.adapter.tracker.begin("git pull")
        assert sync.cancel() == 1
        assert sync.running_commands == []


class TestWorkingTree:
    async def test_stage_and_unstage(self, sync, repo):
        (repo / "a.txt").write_text("a\n")
        assert await sync.stage(["a.txt"])
        assert [c.path for c in sync.staged] == ["a.txt"]
        assert await sync.unstage(["a.txt"])
        assert sync.staged == []
        assert [c.path for c in sync.unstaged] == ["a.txt"]

    async def test_discard_classes(self, sync, repo):
        (repo / "untracked.txt").write_text("u\n")
        (repo / "staged_new.txt").write_text("s\n")
        git(repo, "add", "staged_new.txt")
        (repo / "README.md").write_text("modified\n")
        git(repo, "add", "README.md")
        (repo / "README.md").write_text("modified twice\n")

        assert await sync.discard(["untracked.txt", "staged_new.txt", "README.md"])

        assert not (repo / "untracked.txt").exists()
        assert not (repo / "staged_new.txt").exists()
        assert (repo / "README.md").read_text() == "hello\n"
        assert sync.status.is_clean

    async def test_discard_many_files_in_batches(self, repo, config):
        small = config.model_copy(update={"max_batch_paths": 3})
        for i in range(7):
            commit_file(repo, f"f{i}.txt", "x\n", f"Add f{i}")
        sync = await open_repository(repo, small)
        try:
            for i in range(7):
                (repo / f"f{i}.txt").write_text("changed\n")
            assert await sync.discard([f"f{i}.txt" for i in range(7)])
            assert sync.status.is_clean
        finally:
            await sync.close()

    async def test_add_to_gitignore(self, sync, repo):
        (repo / "build.log").write_text("x\n")
        assert await sync.add_to_gitignore("*.log")
        assert await sync.add_to_gitignore("*.log")
        assert (repo / ".gitignore").read_text() == "*.log\n"
        assert [c.path for c in sync.unstaged] == [".gitignore"]

    async def test_clean_working_directory(self, sync, repo):
        (repo / "junk").mkdir()
        (repo / "junk" / "file.txt").write_text("x\n")
        assert await sync.clean_working_directory()
        assert not (repo / "junk").exists()
        assert sync.status.is_clean


class TestHistory:
    async def test_get_commits_cached(self, sync):
        with patch.object(sync.adapter, "log", wraps=sync.adapter.log) as log:
            first = await sync.get_commits()
            second = await sync.get_commits("main")
        assert [c.subject for c in first] == ["Initial commit"]
        assert first == second
        assert log.call_count == 1

    async def test_commit_with_description(self, sync, repo):
        await sync.get_commits()
        (repo / "a.txt").write_text("a\n")
        await sync.stage(["a.txt"])
        assert await sync.commit("Add a", "Longer explanation")
        assert "main" not in sync.commit_cache
        commits = await sync.get_commits()
        assert commits[0].subject == "Add a"
        assert commits[0].body == "Longer explanation"
        assert sync.status.is_clean

    async def test_empty_commit_message_fails(self, sync, events):
        assert await sync.commit("   ") is False
        assert "empty" in sync.last_error
        failures = [e for e in events if e.name == OPERATION_FAILED]
        assert failures[0].data["operation"] == "commit"

    async def test_amend(self, sync, repo):
        assert await sync.commit("Reworded", amend=True)
        assert git(repo, "log", "--format=%s").splitlines() == ["Reworded"]

    async def test_reset_to_commit(self, sync, repo):
        first = git(repo, "rev-parse", "HEAD").strip()
        commit_file(repo, "a.txt", "a\n", "Second")
        assert await sync.reset_to_commit(first)
        assert git(repo, "rev-parse", "HEAD").strip() == first
        assert not (repo / "a.txt").exists()

    async def test_revert(self, sync, repo):
        commit_file(repo, "a.txt", "a\n", "Add a")
        head = git(repo, "rev-parse", "HEAD").strip()
        assert await sync.revert(head)
        assert not (repo / "a.txt").exists()
        assert git(repo, "log", "-1", "--format=%s").startswith('Revert "Add a"')

    async def test_cherry_pick(self, sync, repo):
        git(repo, "checkout", "-q", "-b", "feature")
        picked = commit_file(repo, "a.txt", "a\n", "Feature work")
        git(repo, "checkout", "-q", "main")
        await sync.refresh()
        assert await sync.cherry_pick(picked)
        assert (repo / "a.txt").read_text() == "a\n"

    async def test_checkout_commit_detaches(self, sync, repo):
        first = git(repo, "rev-parse", "HEAD").strip()
        commit_file(repo, "a.txt", "a\n", "Second")
        assert await sync.checkout_commit(first)
        assert sync.current_branch == "HEAD"

    async def test_tags_invalidate_affected_branches(self, sync, repo):
        head = git(repo, "rev-parse", "HEAD").strip()
        await sync.get_commits("main")
        assert await sync.create_tag("v1.0", head, "First release")
        assert "main" not in sync.commit_cache
        commits = await sync.get_commits("main")
        assert commits[0].tags == ["v1.0"]

        assert await sync.delete_tag("v1.0")
        assert "main" not in sync.commit_cache
        assert (await sync.get_commits("main"))[0].tags == []

    async def test_save_commit_patch(self, sync, repo, tmp_path):
        head = git(repo, "rev-parse", "HEAD").strip()
        output = tmp_path / "commit.patch"
        assert await sync.save_commit_patch(head, output)
        assert "Subject: [PATCH] Initial commit" in output.read_text()

    async def test_create_patch_from_working_tree(self, sync, repo, tmp_path):
        (repo / "README.md").write_text("hello\nmore\n")
        output = tmp_path / "changes.patch"
        assert await sync.create_patch(["README.md"], output)
        assert "+more" in output.read_text()


class TestBranches:
    async def test_create_and_checkout(self, sync):
        assert await sync.create_branch("feature", checkout=True)
        assert sync.current_branch == "feature"
        assert {b.name for b in sync.branches} == {"feature", "main"}

    async def test_cannot_delete_current_branch(self, sync):
        assert await sync.delete_branch("main") is False
        assert "current branch" in sync.last_error

    async def test_delete_branch(self, sync):
        await sync.create_branch("old")
        assert await sync.delete_branch("old")
        assert [b.name for b in sync.branches] == ["main"]

    async def test_rename_current_branch(self, sync):
        assert await sync.rename_branch("main", "trunk")
        assert sync.current_branch == "trunk"
        assert [b.name for b in sync.branches] == ["trunk"]

    async def test_switch_clean_tree(self, sync, events):
        await sync.create_branch("feature")
        assert await sync.switch_branch("feature")
        assert sync.current_branch == "feature"
        assert not any(e.name == BRANCH_SWITCH_REQUESTED for e in events)

    async def test_switch_to_current_is_noop(self, sync):
        assert await sync.switch_branch("main")

    async def test_switch_stash_and_reapply(self, sync, repo):
        await sync.create_branch("feature")
        (repo / "README.md").write_text("carried\n")
        assert await sync.switch_branch("feature", "stash-and-reapply")
        assert sync.current_branch == "feature"
        assert (repo / "README.md").read_text() == "carried\n"
        assert sync.stashes == []

    async def test_switch_keeps_staged_changes_staged(self, sync, repo):
        await sync.create_branch("feature")
        (repo / "README.md").write_text("staged\n")
        await sync.stage(["README.md"])
        assert await sync.switch_branch("feature", "stash-and-reapply")
        assert [c.path for c in sync.staged] == ["README.md"]

    async def test_switch_discard(self, sync, repo):
        await sync.create_branch("feature")
        (repo / "README.md").write_text("thrown away\n")
        (repo / "scratch.txt").write_text("x\n")
        assert await sync.switch_branch("feature", "discard")
        assert (repo / "README.md").read_text() == "hello\n"
        assert not (repo / "scratch.txt").exists()

    async def test_branch_stash_round_trip(self, sync, repo):
        await sync.create_branch("feature")
        (repo / "README.md").write_text("main work\n")

        assert await sync.switch_branch("feature", "branch-stash")
        assert (repo / "README.md").read_text() == "hello\n"
        assert [s.branch_stash_target for s in sync.stashes] == ["main"]

        assert await sync.switch_branch("main")
        assert (repo / "README.md").read_text() == "main work\n"
        assert sync.stashes == []

    async def test_branch_stash_takes_new_files(self, sync, repo):
        await sync.create_branch("feature")
        (repo / "new.txt").write_text("only on main\n")

        assert await sync.switch_branch("feature", "branch-stash")
        assert not (repo / "new.txt").exists()
        assert [s.branch_stash_target for s in sync.stashes] == ["main"]

        assert await sync.switch_branch("main")
        assert (repo / "new.txt").read_text() == "only on main\n"
        assert sync.stashes == []

    async def test_stash_and_reapply_carries_new_files(self, sync, repo):
        await sync.create_branch("feature")
        (repo / "new.txt").write_text("carried\n")
        assert await sync.switch_branch("feature", "stash-and-reapply")
        assert (repo / "new.txt").read_text() == "carried\n"
        assert sync.stashes == []
        assert [c.path for c in sync.unstaged] == ["new.txt"]

    async def test_branch_stash_message(self, sync, repo):
        await sync.create_branch("feature")
        (repo / "README.md").write_text("main work\n")
        await sync.switch_branch("feature", "branch-stash")
        assert sync.stashes[0].has_message(branch_stash_message("main"))

    async def test_switch_asks_for_disposition(self, sync, repo, event_bus, events):
        await sync.create_branch("feature")
        (repo / "README.md").write_text("local\n")

        async def answer(event):
            assert sync.resolve_branch_switch("stash-and-reapply", event.data["switch_id"])

        event_bus.subscribe(BRANCH_SWITCH_REQUESTED, answer)
        assert await sync.switch_branch("feature")
        assert sync.current_branch == "feature"
        assert (repo / "README.md").read_text() == "local\n"
        resolved = [e for e in events if e.name == BRANCH_SWITCH_RESOLVED]
        assert resolved[0].data["disposition"] == "stash-and-reapply"
        assert sync.pending_switch is None

    async def test_cancelled_switch(self, sync, repo, event_bus):
        await sync.create_branch("feature")
        (repo / "README.md").write_text("local\n")

        async def answer(event):
            sync.resolve_branch_switch("cancel")

        event_bus.subscribe(BRANCH_SWITCH_REQUESTED, answer)
        assert await sync.switch_branch("feature") is False
        assert sync.current_branch == "main"
        assert sync.last_error is None

    async def test_disposition_timeout(self, repo, config):
        quick = config.model_copy(update={"disposition_timeout_seconds": 0.05})
        git(repo, "branch", "feature")
        (repo / "README.md").write_text("local\n")
        sync = await open_repository(repo, quick)
        try:
            await sync.refresh()
            assert await sync.switch_branch("feature") is False
            assert sync.pending_switch is None
            assert sync.current_branch == "main"
        finally:
            await sync.close()

    async def test_resolve_without_pending(self, sync):
        assert sync.resolve_branch_switch("leave-alone") is False
        with pytest.raises(ValueError, match="unknown disposition"):
            sync.resolve_branch_switch("explode")  # type: ignore[arg-type]

    async def test_failed_checkout_restores_stash(self, sync, repo):
        (repo / "README.md").write_text("local\n")
        assert await sync.switch_branch("missing", "stash-and-reapply") is False
        assert (repo / "README.md").read_text() == "local\n"
        assert sync.stashes == []
        assert sync.last_error


class TestStashes:
    async def test_stash_default_message(self, sync, repo):
        (repo / "README.md").write_text("wip\n")
        assert await sync.stash()
        assert len(sync.stashes) == 1
        assert "WIP on main" in sync.stashes[0].message
        assert sync.status.is_clean

    async def test_stash_new_files(self, sync, repo):
        (repo / "new.txt").write_text("new\n")
        assert await sync.stash("with new", stage_new_files=True)
        assert not (repo / "new.txt").exists()
        assert await sync.apply_stash(sync.stashes[0], delete_after=True)
        assert (repo / "new.txt").read_text() == "new\n"
        assert sync.stashes == []

    async def test_apply_after_index_shift(self, sync, repo):
        (repo / "README.md").write_text("first\n")
        await sync.stash("first")
        (repo / "README.md").write_text("second\n")
        await sync.stash("second")
        first = next(s for s in sync.stashes if s.has_message("first"))
        newest = next(s for s in sync.stashes if s.has_message("second"))
        assert first.index == 1

        assert await sync.drop_stash(newest)
        assert await sync.apply_stash(first)
        assert (repo / "README.md").read_text() == "first\n"
        assert len(sync.stashes) == 1

    async def test_stale_entry_fails(self, sync, events):
        stale = StashEntry(index=0, message="gone", hash="0" * 40)
        assert await sync.drop_stash(stale) is False
        assert "no longer exists" in sync.last_error
        assert events[-1].data["operation"] == "drop_stash"

    async def test_rename_stash(self, sync, repo):
        (repo / "README.md").write_text("wip\n")
        await sync.stash("old name")
        assert await sync.rename_stash(sync.stashes[0], "new name")
        assert len(sync.stashes) == 1
        assert sync.stashes[0].has_message("new name")
        assert sync.stashes[0].message == "On main: new name"

    async def test_failed_rename_keeps_stash(self, sync, repo):
        (repo / "README.md").write_text("wip\n")
        await sync.stash("old name")
        failure = OperationError("git stash store", "could not store")
        with patch.object(sync.adapter, "stash_store", side_effect=failure):
            assert await sync.rename_stash(sync.stashes[0], "new name") is False
        assert sync.last_error
        assert [s.message for s in sync.stashes] == ["On main: old name"]


class TestRemoteSync:
    async def test_ahead_count(self, remote_sync, remote_pair):
        _, clone = remote_pair
        commit_file(clone, "a.txt", "a\n", "Local")
        await remote_sync.refresh()
        assert remote_sync.branch_status["main"] == AheadBehind(ahead=1, behind=0)
        assert remote_sync.remote_branches == ["origin/main"]

    async def test_push_marks_commits_on_origin(self, remote_sync, remote_pair):
        _, clone = remote_pair
        commit_file(clone, "a.txt", "a\n", "Local")
        await remote_sync.refresh()
        commits = await remote_sync.get_commits("main")
        assert [c.on_origin for c in commits] == [False, True]

        output = await remote_sync.push()
        assert output is not None
        assert [c.on_origin for c in remote_sync.commit_cache.get("main")] == [True, True]
        assert remote_sync.branch_status["main"] == AheadBehind(ahead=0, behind=0)

    async def test_push_new_branch_to_other_name(self, remote_sync, remote_pair):
        origin, _ = remote_pair
        await remote_sync.create_branch("feature", checkout=True)
        assert await remote_sync.push("feature", "renamed-feature") is not None
        assert "renamed-feature" in git(origin, "branch", "--list")

    async def test_push_failure_returns_none(self, sync, events):
        assert await sync.push() is None
        assert events[-1].data["operation"] == "push"

    async def test_fetch_sees_new_remote_commits(self, remote_sync, remote_pair, tmp_path):
        origin, _ = remote_pair
        other = _second_clone(origin, tmp_path)
        commit_file(other, "b.txt", "b\n", "From elsewhere")
        git(other, "push", "-q", "origin", "main")

        await remote_sync.get_commits("origin/main")
        assert await remote_sync.fetch()
        assert "origin/main" not in remote_sync.commit_cache
        assert remote_sync.branch_status["main"] == AheadBehind(ahead=0, behind=1)

    async def test_fetch_marks_externally_pushed_commits(self, remote_sync, remote_pair):
        _, clone = remote_pair
        commit_file(clone, "a.txt", "a\n", "Local")
        await remote_sync.refresh()
        commits = await remote_sync.get_commits("main")
        assert [c.on_origin for c in commits] == [False, True]

        git(clone, "push", "-q", "origin", "main")
        assert await remote_sync.fetch()
        assert [c.on_origin for c in remote_sync.commit_cache.get("main")] == [True, True]
        assert remote_sync.branch_status["main"] == AheadBehind(ahead=0, behind=0)

    async def test_pull_with_stash_and_reapply(self, remote_sync, remote_pair, tmp_path):
        origin, clone = remote_pair
        other = _second_clone(origin, tmp_path)
        commit_file(other, "b.txt", "b\n", "From elsewhere")
        git(other, "push", "-q", "origin", "main")
        (clone / "README.md").write_text("local edit\n")

        assert await remote_sync.pull(stash_and_reapply=True)
        assert (clone / "b.txt").read_text() == "b\n"
        assert (clone / "README.md").read_text() == "local edit\n"
        assert remote_sync.stashes == []
        assert remote_sync.branch_status["main"] == AheadBehind(ahead=0, behind=0)

    async def test_failed_pull_keeps_error(self, sync):
        assert await sync.pull() is False
        assert sync.last_error
        assert sync.current_branch == "main"

    async def test_reset_to_origin(self, remote_sync, remote_pair):
        _, clone = remote_pair
        commit_file(clone, "a.txt", "a\n", "Local")
        assert await remote_sync.reset_to_origin()
        assert not (clone / "a.txt").exists()
        assert remote_sync.branch_status["main"] == AheadBehind(ahead=0, behind=0)

    async def test_switch_to_remote_branch(self, remote_sync):
        assert await remote_sync.create_branch("other", checkout=True)
        assert await remote_sync.switch_branch("origin/main")
        assert remote_sync.current_branch == "main"

    async def test_remote_management(self, sync):
        assert await sync.add_remote("origin", "https://example.com/a.git")
        assert sync.origin_url == "https://example.com/a.git"
        assert await sync.edit_remote("origin", "https://example.com/b.git")
        assert [(r.name, r.url) for r in sync.remotes] == [
            ("origin", "https://example.com/b.git")
        ]
        assert await sync.remove_remote("origin")
        assert sync.remotes == []
        assert sync.origin_url == ""

    def test_pull_request_urls(self):
        from gitdock.core.synchronizer import RepositoryStateSynchronizer

        output = "remote:   https://example.com/acme/app/pull/new/feature\n"
        assert RepositoryStateSynchronizer.pull_request_urls(output) == [
            "https://example.com/acme/app/pull/new/feature"
        ]


class TestConflicts:
    @pytest.fixture
    def conflicted(self, repo):
        git(repo, "checkout", "-q", "-b", "feature")
        commit_file(repo, "README.md", "feature side\n", "Feature edit")
        git(repo, "checkout", "-q", "main")
        commit_file(repo, "README.md", "main side\n", "Main edit")
        return repo

    async def test_merge_conflict_sources(self, conflicted, config):
        sync = await open_repository(conflicted, config)
        try:
            await sync.refresh()
            assert await sync.merge("feature") is False
            assert sync.status.conflicts == ["README.md"]
            assert sync.conflict_sources.operation == "merge"
            assert sync.conflict_sources.ours == "main"
            assert sync.conflict_sources.theirs == "feature"

            assert await sync.resolve_conflict("README.md", "theirs")
            assert sync.status.conflicts == []
            assert sync.conflict_sources is None
            assert (conflicted / "README.md").read_text() == "feature side\n"
        finally:
            await sync.close()

    async def test_rebase_conflict_sources(self, conflicted, config):
        sync = await open_repository(conflicted, config)
        try:
            await sync.refresh()
            assert await sync.rebase("feature") is False
            assert sync.conflict_sources.operation == "rebase"
            assert sync.conflict_sources.ours == "feature"
            assert sync.conflict_sources.theirs == "main"
        finally:
            git(conflicted, "rebase", "--abort")
            await sync.close()


class TestPolling:
    async def test_polling_picks_up_changes(self, sync, repo):
        await sync.start_polling()
        assert sync.is_polling
        (repo / "README.md").write_text("changed\n")
        for _ in range(100):
            if sync.unstaged:
                break
            await asyncio.sleep(0.02)
        assert [c.path for c in sync.unstaged] == ["README.md"]
        await sync.stop_polling()
        assert not sync.is_polling

    async def test_inactive_skips_refresh(self, sync, repo):
        sync.set_active(False)
        await sync.start_polling()
        (repo / "README.md").write_text("changed\n")
        await asyncio.sleep(0.2)
        assert sync.unstaged == []
        await sync.stop_polling()

    async def test_stop_without_start(self, sync):
        await sync.stop_polling()


async def test_open_nested_repository(tmp_path, config):
    path = init_repo(tmp_path / "nested" / "repo")
    commit_file(path, "a.txt", "a\n", "First")
    sync = await open_repository(path, config)
    try:
        assert await sync.load()
        assert sync.current_branch == "main"
    finally:
        await sync.close()
