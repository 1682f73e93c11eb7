from __future__ import annotations

import threading

import pytest

from multibranch.config_schema import MultibranchConfig
from multibranch.errors import ReconciliationAborted
from multibranch.events import EventType, HeadEvent
from multibranch.organization import MultiBranchProjectFactory, OrganizationFolder
from multibranch.service import ReconciliationService
from multibranch.testing import FakeNavigator, FakeSource, RecordingScheduler, make_container


class _BlockingSource(FakeSource):
    """Source whose fetch waits until released, to hold a pass open."""

    def __init__(self, source_id, heads=None):
        super().__init__(source_id, heads)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch(self, criteria, log):
        self.entered.set()
        self.release.wait(5)
        return super().fetch(criteria, log)


def test_from_config():
    config = MultibranchConfig.model_validate({"reconcile": {"max_workers": 2, "scan_on_event_failure": False}})
    service = ReconciliationService.from_config(config)
    try:
        assert service.max_workers == 2
        assert service.scan_on_event_failure is False
    finally:
        service.shutdown()


def test_containers_reconcile_concurrently():
    slow = _BlockingSource("slow", {"main": "a"})
    slow_container = make_container(slow, name="slow")
    fast_container = make_container(FakeSource("fast", {"main": "b"}), name="fast")

    with ReconciliationService(max_workers=2) as service:
        slow_future = service.submit_scan(slow_container)
        assert slow.entered.wait(5)
        fast_outcome = service.submit_scan(fast_container).result(timeout=5)
        assert fast_outcome.created == ["main"]
        assert not slow_future.done()
        slow.release.set()
        assert slow_future.result(timeout=5).created == ["main"]


def test_same_container_passes_serialize():
    source = _BlockingSource("origin", {"main": "a"})
    container = make_container(source)

    with ReconciliationService(max_workers=2) as service:
        first = service.submit_scan(container)
        assert source.entered.wait(5)
        second = service.submit_scan(container)
        assert not second.done()
        source.release.set()
        assert first.result(timeout=5).created == ["main"]
        assert second.result(timeout=5).unchanged == ["main"]


def test_queued_passes_do_not_hold_workers():
    busy = _BlockingSource("busy", {"main": "a"})
    busy_container = make_container(busy, name="busy")
    other_container = make_container(FakeSource("other", {"dev": "b"}), name="other")

    with ReconciliationService(max_workers=2) as service:
        first = service.submit_scan(busy_container)
        assert busy.entered.wait(5)
        second = service.submit_scan(busy_container)
        assert service.pending(busy_container) == 1

        other = service.submit_scan(other_container)
        assert other.result(timeout=5).created == ["dev"]
        assert not first.done() and not second.done()

        busy.release.set()
        assert first.result(timeout=5).created == ["main"]
        assert second.result(timeout=5).unchanged == ["main"]
        assert service.pending(busy_container) == 0


def test_cancel_drops_queued_passes():
    source = _BlockingSource("origin", {"main": "a"})
    container = make_container(source)
    service = ReconciliationService(max_workers=2)
    running = service.submit_scan(container)
    assert source.entered.wait(5)
    queued = service.submit_scan(container)

    service.shutdown(cancel=True, wait=False)
    source.release.set()
    with pytest.raises(ReconciliationAborted):
        running.result(timeout=5)
    assert queued.cancelled()
    with pytest.raises(RuntimeError):
        service.submit_scan(container)


def test_followups_drop_finished_futures():
    source = FakeSource("origin", {"main": "a"})
    source.fail()
    container = make_container(source)

    with ReconciliationService(max_workers=1) as service:
        for _ in range(3):
            service.submit_event(container, HeadEvent(EventType.UPDATED, {"main"})).result(timeout=5)
            for future in service.followups():
                future.result(timeout=5)
        assert len(service.followups()) == 1


def test_event_failure_queues_a_full_scan():
    source = FakeSource("origin", {"main": "a"})
    container = make_container(source)
    source.fail()

    with ReconciliationService(max_workers=1) as service:
        outcome = service.submit_event(container, HeadEvent(EventType.CREATED, {"main"})).result(timeout=5)
        assert outcome.failed_sources == ["origin"]
        (followup,) = service.followups()
        assert followup.result(timeout=5).failed_sources == ["origin"]
    assert source.fetch_calls == 1


def test_event_failure_followup_can_be_disabled():
    source = FakeSource("origin", {"main": "a"})
    source.fail()
    container = make_container(source)
    with ReconciliationService(max_workers=1, scan_on_event_failure=False) as service:
        service.submit_event(container, HeadEvent(EventType.UPDATED, {"main"})).result(timeout=5)
        assert service.followups() == []


def test_organization_scan_queues_container_scans():
    scheduler = RecordingScheduler()
    nav = FakeNavigator("github", {"api": [FakeSource("api", {"main": "a"})], "web": [FakeSource("web", {"dev": "b"})]})
    folder = OrganizationFolder("org", [nav], [MultiBranchProjectFactory(scheduler=scheduler)])

    with ReconciliationService(max_workers=2) as service:
        outcome = service.submit_organization_scan(folder).result(timeout=5)
        assert outcome.created == ["api", "web"]
        for future in service.followups():
            future.result(timeout=5)
    assert sorted(scheduler.names()) == ["dev", "main"]


def test_cancel_stops_in_flight_pass():
    source = _BlockingSource("origin", {"main": "a", "dev": "b"})
    container = make_container(source)
    service = ReconciliationService(max_workers=1)
    future = service.submit_scan(container)
    assert source.entered.wait(5)
    service.shutdown(cancel=True, wait=False)
    source.release.set()
    with pytest.raises(ReconciliationAborted):
        future.result(timeout=5)
    assert service.cancelled
    assert container.children == {}
