"""Tests for full-scan reconciliation.

Tests cover:
- Creation, change detection and idempotence
- Source priority and takeover
- Dead branches and retention
- Transient source failures
- Persistence failures and unsupported children
- Cancellation
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from multibranch.build_gate import (
    BranchIndexingCause,
    NoTriggerBranchProperty,
    OverrideTriggersProperty,
    SkipInitialBuildStrategy,
    SuppressionStrategy,
)
from multibranch.container import MultiBranchContainer
from multibranch.errors import PersistenceError, ReconciliationAborted
from multibranch.lifecycle import DefaultDeadBranchStrategy
from multibranch.mangler import mangle
from multibranch.model import BranchSource, Head, HeadKind, LiveBranch, Revision
from multibranch.observability import TaskLog
from multibranch.projects import BranchProject, InMemoryProjectFactory
from multibranch.properties import BuildRetentionProperty, DefaultBranchPropertyStrategy, ParameterProperty
from multibranch.testing import FakePoller, FakeSource, RecordingScheduler, make_container


def _owner(container, name):
    return container.factory.get_branch(container.get_child(mangle(name))).source_id


class TestCreation:
    def test_new_branches_are_created_and_built(self):
        source = FakeSource("origin", {"main": "a1", "feature/x": "b1"})
        container = make_container(source)
        log = TaskLog()
        outcome = container.scan(log)

        assert sorted(outcome.created) == sorted([mangle("main"), mangle("feature/x")])
        assert sorted(container.scheduler.names()) == sorted(outcome.created)
        child = container.get_child(mangle("feature/x"))
        assert child.display_name == "feature/x"
        assert child.last_built == Revision("feature/x", "b1")
        assert child.last_seen == Revision("feature/x", "b1")
        assert child.save_count == 1
        assert "New branch feature/x from source origin" in log
        assert "Scheduled build for branch: main" in log
        assert isinstance(container.scheduler.requests[0][1][0], BranchIndexingCause)

    def test_child_name_is_encoded(self):
        container = make_container(FakeSource("origin", {"feature/☠weird name": "a"}))
        container.scan()
        (name,) = container.children
        assert name == mangle("feature/☠weird name")
        assert container.children[name].display_name == "feature/☠weird name"

    def test_tags_are_created_but_not_built(self):
        source = FakeSource("origin", {"main": "a"})
        source.set_head("v1.0", "t1", HeadKind.TAG)
        container = make_container(source)
        outcome = container.scan()
        assert mangle("v1.0") in outcome.created
        assert container.scheduler.names() == ["main"]

    def test_properties_are_applied(self):
        strategy = DefaultBranchPropertyStrategy([ParameterProperty(("DEPLOY",))])
        container = make_container(BranchSource(FakeSource("origin", {"main": "a"}), strategy))
        container.scan()
        assert container.get_child("main").parameters == ("DEPLOY",)

    def test_head_actions_are_attached(self):
        source = FakeSource("origin", {"main": "a"})
        source.head_actions["main"] = [{"url": "https://example.com/main"}]
        container = make_container(source)
        container.scan()
        assert container.get_child("main").branch.actions == ({"url": "https://example.com/main"},)


class TestChanges:
    def test_second_scan_is_a_no_op(self):
        source = FakeSource("origin", {"main": "a", "dev": "b"})
        container = make_container(source)
        container.scan()
        saves = {n: c.save_count for n, c in container.children.items()}
        container.scheduler.clear()

        log = TaskLog()
        outcome = container.scan(log)

        assert container.scheduler.names() == []
        assert {n: c.save_count for n, c in container.children.items()} == saves
        assert sorted(outcome.unchanged) == ["dev", "main"]
        assert not outcome.changed
        assert "No changes detected in main (still at a)" in log

    def test_new_revision_triggers_build(self):
        source = FakeSource("origin", {"main": "a"})
        container = make_container(source)
        container.scan()
        container.scheduler.clear()

        source.set_head("main", "b")
        log = TaskLog()
        outcome = container.scan(log)

        assert container.scheduler.names() == ["main"]
        assert outcome.updated == ["main"]
        assert container.get_child("main").last_built == Revision("main", "b")
        assert "Changes detected in main (a → b)" in log

    def test_rejected_build_is_not_retried_for_same_revision(self):
        source = FakeSource("origin", {"main": "a"})
        scheduler = RecordingScheduler(accept=False)
        container = make_container(source, scheduler=scheduler)
        container.scan()
        child = container.get_child("main")
        assert child.last_built is None
        assert child.last_seen == Revision("main", "a")

        scheduler.clear()
        container.scan()
        assert scheduler.names() == []

    def test_skip_initial_build_marks_revision_built(self):
        source = FakeSource("origin", {"main": "a"})
        container = make_container(BranchSource(source, build_strategies=[SkipInitialBuildStrategy()]))
        log = TaskLog()
        container.scan(log)

        assert container.scheduler.names() == []
        assert container.get_child("main").last_built == Revision("main", "a")
        assert "Not building main: SkipInitialBuildStrategy" in log

        source.set_head("main", "b")
        container.scan()
        assert container.scheduler.names() == ["main"]

    def test_non_deterministic_revision_asks_the_poller(self):
        source = FakeSource("origin")
        source.set_head("main", "latest", deterministic=False)
        poller = FakePoller()
        container = make_container(source, poller=poller)
        container.scan()
        container.scheduler.clear()

        container.scan()
        assert poller.calls == ["main"]
        assert container.scheduler.names() == []

        poller.changed.add("main")
        container.scan()
        assert container.scheduler.names() == ["main"]

    def test_poller_failure_counts_as_no_change(self):
        source = FakeSource("origin")
        source.set_head("main", "latest", deterministic=False)
        container = make_container(source, poller=FakePoller(error="timed out"))
        container.scan()
        container.scheduler.clear()

        log = TaskLog()
        container.scan(log)
        assert container.scheduler.names() == []
        assert "Could not poll main" in log


class TestPriority:
    def test_higher_priority_source_owns_shared_name(self):
        a = FakeSource("a", {"feature": "a1"})
        b = FakeSource("b", {"feature": "b1", "only-b": "b2"})
        container = make_container(a, b)
        log = TaskLog()
        outcome = container.scan(log)

        assert _owner(container, "feature") == "a"
        assert _owner(container, "only-b") == "b"
        assert container.get_child("feature").last_built == Revision("feature", "a1")
        assert "feature" in outcome.ignored
        assert "Ignoring duplicate branch project feature" in log

    def test_takeover_when_owner_is_removed_from_config(self):
        a = FakeSource("a", {"feature": "a1"})
        b = FakeSource("b", {"feature": "b1"})
        container = make_container(BranchSource(a), BranchSource(b))
        container.scan()
        container.scheduler.clear()

        container.set_sources([BranchSource(b)])
        log = TaskLog()
        outcome = container.scan(log)

        assert _owner(container, "feature") == "b"
        assert outcome.reopened == ["feature"]
        assert container.scheduler.names() == ["feature"]
        assert "Source b takes over feature from a" in log

    def test_takeover_when_owner_stops_reporting(self):
        a = FakeSource("a", {"feature": "x1"})
        b = FakeSource("b", {"feature": "x1"})
        container = make_container(a, b)
        container.scan()
        container.scheduler.clear()

        a.remove_head("feature")
        container.scan()
        assert _owner(container, "feature") == "b"
        assert container.scheduler.names() == ["feature"]

    def test_higher_priority_source_takes_over_from_lower(self):
        a = FakeSource("a")
        b = FakeSource("b", {"feature": "b1"})
        container = make_container(a, b)
        container.scan()
        assert _owner(container, "feature") == "b"

        a.set_head("feature", "a1")
        container.scan()
        assert _owner(container, "feature") == "a"

    def test_reordering_sources_moves_ownership(self):
        a = FakeSource("a", {"feature": "a1"})
        b = FakeSource("b", {"feature": "b1"})
        container = make_container(a, b)
        container.scan()
        assert _owner(container, "feature") == "a"

        container.set_sources([BranchSource(b), BranchSource(a)])
        container.scan()
        assert _owner(container, "feature") == "b"
        assert container.get_child("feature").last_built == Revision("feature", "b1")


class TestDeadBranches:
    def test_unreported_branch_is_marked_dead(self):
        source = FakeSource("origin", {"main": "a", "gone": "b"})
        container = make_container(source)
        container.scan()

        source.remove_head("gone")
        log = TaskLog()
        outcome = container.scan(log)

        child = container.get_child("gone")
        assert child.is_dead
        assert outcome.dead == ["gone"]
        assert "Branch gone is no longer reported; marking dead" in log

        container.scan()
        assert child.save_count == 2

    def test_reappearing_branch_is_reopened_and_built(self):
        source = FakeSource("origin", {"main": "a"})
        container = make_container(source)
        container.scan()
        source.remove_head("main")
        container.scan()
        container.scheduler.clear()

        source.set_head("main", "a")
        log = TaskLog()
        outcome = container.scan(log)

        assert outcome.reopened == ["main"]
        assert not container.get_child("main").is_dead
        assert container.scheduler.names() == ["main"]
        assert "Reopening branch main from source origin" in log

    def test_cleanup_policy_removes_dead_children(self, tmp_path: Path):
        source = FakeSource("origin", {"main": "a", "gone": "b"})
        container = make_container(
            source,
            cleanup_policy=DefaultDeadBranchStrategy(num_to_keep=0),
            state_dir=tmp_path,
        )
        container.scan()
        assert (tmp_path / "branches" / "gone" / "branch.json").exists()

        source.remove_head("gone")
        outcome = container.scan()
        assert outcome.removed == ["gone"]
        assert container.get_child("gone") is None
        assert not (tmp_path / "branches" / "gone").exists()

    def test_default_policy_keeps_dead_children(self):
        source = FakeSource("origin", {"gone": "b"})
        container = make_container(source, cleanup_policy=DefaultDeadBranchStrategy())
        container.scan()
        source.remove_head("gone")
        container.scan()
        assert container.dead_children() == [container.get_child("gone")]


class TestFailures:
    def test_failed_source_protects_its_branches(self):
        a = FakeSource("a", {"main": "a1", "dev": "a2"})
        b = FakeSource("b", {"other": "b1"})
        container = make_container(a, b)
        container.scan()
        container.scheduler.clear()

        a.set_head("main", "a9")
        a.fail(after=1)
        b.remove_head("other")
        log = TaskLog()
        outcome = container.scan(log)

        assert outcome.failed_sources == ["a"]
        main = container.get_child("main")
        assert not main.is_dead
        assert main.last_built == Revision("main", "a1")
        assert not container.get_child("dev").is_dead
        assert container.get_child("other").is_dead
        assert container.scheduler.names() == []
        assert "Leaving main untouched: source a could not be reached" in log

    def test_recovered_source_resumes(self):
        source = FakeSource("origin", {"main": "a"})
        container = make_container(source)
        container.scan()
        source.fail()
        container.scan()
        source.heal()
        source.remove_head("main")
        container.scan()
        assert container.get_child("main").is_dead

    def test_head_failure_skips_only_that_head(self):
        a = FakeSource("a", {"bad": "a1", "good": "a2"})
        a.broken.add("bad")
        b = FakeSource("b", {"other": "b1"})
        container = make_container(a, b)
        log = TaskLog()
        outcome = container.scan(log)

        assert sorted(outcome.created) == ["good", "other"]
        assert "bad" not in container.children
        assert "bad" in outcome.ignored
        assert outcome.failed_sources == []
        assert "Could not process bad from source a: a: cannot build bad" in log
        assert "Finished branch scan" in log

    def test_head_failure_keeps_existing_child_alive(self):
        source = FakeSource("origin", {"main": "a1", "dev": "b1"})
        container = make_container(source)
        container.scan()
        container.scheduler.clear()

        source.set_head("main", "a2")
        source.broken.add("main")
        source.remove_head("dev")
        log = TaskLog()
        outcome = container.scan(log)

        main = container.get_child("main")
        assert not main.is_dead
        assert main.last_built == Revision("main", "a1")
        assert outcome.dead == ["dev"]
        assert container.scheduler.names() == []
        assert "Leaving main untouched: it could not be refreshed" in log

        source.broken.clear()
        container.scan()
        assert container.get_child("main").last_built == Revision("main", "a2")

    def test_save_failure_does_not_stop_the_pass(self):
        class FailingFactory(InMemoryProjectFactory):
            def save(self, child):
                if child.name == "main":
                    raise PersistenceError("disk full")
                super().save(child)

        container = make_container(
            FakeSource("origin", {"main": "a", "dev": "b"}), factory=FailingFactory()
        )
        log = TaskLog()
        outcome = container.scan(log)
        assert sorted(outcome.created) == ["dev", "main"]
        assert container.get_child("dev").save_count == 1
        assert "Could not save changes to main" in log

    def test_unsupported_child_is_skipped(self):
        container = make_container(FakeSource("origin", {"main": "a", "weird": "b"}))
        marker = object()
        container.children["weird"] = marker
        log = TaskLog()
        outcome = container.scan(log)
        assert container.children["weird"] is marker
        assert "weird" in outcome.ignored
        assert "Detected unsupported subitem weird, skipping" in log

    def test_duplicate_head_in_one_source(self):
        class Repeating(FakeSource):
            def fetch(self, criteria, log):
                return [obs for obs in self._iterate(criteria)] * 2

        container = make_container(Repeating("origin", {"main": "a"}))
        log = TaskLog()
        outcome = container.scan(log)
        assert outcome.created == ["main"]
        assert outcome.ignored == ["main"]
        assert container.scheduler.names() == ["main"]

    def test_criteria_filter_heads(self):
        container = make_container(
            FakeSource("origin", {"main": "a", "wip": "b"}),
            criteria=lambda head, revision: head.name != "wip",
        )
        container.scan()
        assert list(container.children) == ["main"]

    def test_cancelled_scan_raises(self):
        container = make_container(FakeSource("origin", {"main": "a"}))
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(ReconciliationAborted):
            container.scan(cancel=cancel)
        assert container.children == {}
        assert not container.lock.held


class TestSourceActions:
    def test_refreshed_and_pruned(self):
        a = FakeSource("a", {"main": "a"})
        b = FakeSource("b")
        a.source_actions = [{"url": "https://a"}]
        b.source_actions = [{"url": "https://b"}]
        container = make_container(a, b)
        container.scan()
        assert container.source_actions == {"a": [{"url": "https://a"}], "b": [{"url": "https://b"}]}

        container.set_sources([BranchSource(a)])
        container.scan()
        assert list(container.source_actions) == ["a"]


class TestPersistentContainer:
    def test_state_survives_restart(self, tmp_path: Path):
        source = FakeSource("origin", {"main": "a"})
        source.source_actions = [{"url": "https://origin"}]
        first = make_container(source, state_dir=tmp_path)
        first.scan()

        scheduler = RecordingScheduler()
        second = MultiBranchContainer("repo", [BranchSource(source)], scheduler=scheduler, state_dir=tmp_path)
        assert second.get_child("main").last_built == Revision("main", "a")
        assert second.source_actions == {"origin": [{"url": "https://origin"}]}
        second.scan()
        assert scheduler.names() == []
        assert not (tmp_path / ".reconcile.lock").exists()

    def test_properties_and_scm_survive_restart(self, tmp_path: Path):
        props = (
            ParameterProperty(("DEPLOY",)),
            BuildRetentionProperty(num_to_keep=3),
            NoTriggerBranchProperty(SuppressionStrategy.EVENTS, "main|gone"),
            OverrideTriggersProperty(enable_triggers=True),
        )
        source = FakeSource("origin", {"main": "a", "gone": "b"})
        branch_source = BranchSource(source, DefaultBranchPropertyStrategy(props))
        first = make_container(branch_source, state_dir=tmp_path)
        first.scan()
        source.remove_head("gone")
        first.scan()
        assert first.get_child("gone").is_dead

        second = MultiBranchContainer(
            "repo", [branch_source], scheduler=RecordingScheduler(), state_dir=tmp_path
        )
        main = second.get_child("main")
        gone = second.get_child("gone")
        assert main.branch.properties == props
        assert main.branch.scm == "origin:main"
        assert main.parameters == ("DEPLOY",)
        assert main.build_retention == BuildRetentionProperty(num_to_keep=3)
        assert gone.is_dead
        assert gone.branch.properties == props
        assert gone.parameters == ("DEPLOY",)

        outcome = second.scan()
        assert outcome.updated == []
        assert outcome.unchanged == ["main"]
        assert main.save_count == 0

    def test_percent_encoded_lookup(self):
        container = make_container(FakeSource("origin"))
        child = BranchProject("legacy name", "legacy name", LiveBranch("origin", Head("legacy name")))
        container.add_child(child)
        assert container.get_child("legacy%20name") is child
        assert container.get_child("legacy name") is child
        assert container.get_child("missing%20name") is None
