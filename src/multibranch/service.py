"""Worker pool running scans and events for many containers.

Passes for different containers run concurrently. Passes for the same
container run one after another: each container has a queue of pending
passes and at most one of them is on the pool at a time, so a worker never
waits on a pass of another worker. The container lock still guards
against passes started outside this service.
"""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Optional, Tuple

from .container import MultiBranchContainer
from .errors import MultibranchError
from .observability import TaskLog, log_action, log_debug, log_error

if TYPE_CHECKING:
    from .config_schema import MultibranchConfig
    from .events import HeadEvent, SourceEvent
    from .organization import OrganizationFolder, OrganizationOutcome
    from .scan import ScanOutcome

_Pass = Tuple[Callable[..., Any], tuple, Future]


class ReconciliationService:
    """Dispatch reconciliation passes onto a thread pool."""

    def __init__(self, max_workers: int = 4, *, scan_on_event_failure: bool = True):
        self.max_workers = max_workers
        self.scan_on_event_failure = scan_on_event_failure
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="multibranch")
        self._cancel = threading.Event()
        self._followups: List[Future] = []
        self._followups_lock = threading.Lock()
        # One entry per target with a pass on the pool; holds the passes queued behind it
        self._lanes: Dict[Any, Deque[_Pass]] = {}
        self._lanes_lock = threading.RLock()
        self._closed = False

    @classmethod
    def from_config(cls, config: "MultibranchConfig") -> "ReconciliationService":
        return cls(
            config.reconcile.max_workers,
            scan_on_event_failure=config.reconcile.scan_on_event_failure,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def submit_scan(self, container: MultiBranchContainer, log: Optional[TaskLog] = None) -> "Future[ScanOutcome]":
        return self._dispatch(container, self._run_scan, container, log or TaskLog())

    def submit_event(
        self,
        container: MultiBranchContainer,
        event: "HeadEvent | SourceEvent",
        log: Optional[TaskLog] = None,
    ) -> "Future[ScanOutcome]":
        return self._dispatch(container, self._run_event, container, event, log or TaskLog())

    def submit_organization_scan(
        self, organization: "OrganizationFolder", log: Optional[TaskLog] = None
    ) -> "Future[OrganizationOutcome]":
        """Scan an organization, then queue a scan of every container it created or updated."""
        return self._dispatch(organization, self._run_organization, organization, log or TaskLog())

    def pending(self, target: Any) -> int:
        """Number of passes for ``target`` waiting behind the one on the pool."""
        with self._lanes_lock:
            lane = self._lanes.get(target)
            return len(lane) if lane is not None else 0

    def followups(self) -> List[Future]:
        """Futures of scans queued as a consequence of other passes."""
        with self._followups_lock:
            return list(self._followups)

    def _dispatch(self, target: Any, fn: Callable[..., Any], *args: Any) -> Future:
        future: Future = Future()
        with self._lanes_lock:
            if self._closed:
                raise RuntimeError("cannot schedule new passes after shutdown")
            lane = self._lanes.get(target)
            if lane is not None:
                lane.append((fn, args, future))
                log_debug("pass queued behind running pass", target=_target_name(target), queued=len(lane))
                return future
            self._lanes[target] = deque([(fn, args, future)])
            self._start_next(target)
        return future

    def _start_next(self, target: Any) -> None:
        """Put the oldest queued pass for ``target`` on the pool. Caller holds ``_lanes_lock``."""
        lane = self._lanes.get(target)
        while lane:
            fn, args, future = lane.popleft()
            if future.cancelled():
                continue
            try:
                task = self._executor.submit(self._execute, fn, args, future)
            except RuntimeError as e:
                # pool already shut down
                future.set_exception(e)
                continue
            task.add_done_callback(partial(self._pass_done, target, future))
            return
        self._lanes.pop(target, None)

    def _pass_done(self, target: Any, future: Future, task: Future) -> None:
        if task.cancelled():
            future.cancel()
        with self._lanes_lock:
            self._start_next(target)

    @staticmethod
    def _execute(fn: Callable[..., Any], args: tuple, future: Future) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    def _queue_followup(self, container: MultiBranchContainer) -> None:
        if self._cancel.is_set():
            return
        try:
            future = self.submit_scan(container)
        except RuntimeError:
            # service already shut down
            log_action("followup_dropped", container=container.name)
            return
        with self._followups_lock:
            self._followups = [f for f in self._followups if not f.done()]
            self._followups.append(future)

    def _run_scan(self, container: MultiBranchContainer, log: TaskLog) -> "ScanOutcome":
        try:
            return container.scan(log, cancel=self._cancel)
        except MultibranchError as e:
            log_error("scan failed", container=container.name, error=str(e))
            raise

    def _run_event(self, container: MultiBranchContainer, event, log: TaskLog) -> "ScanOutcome":
        try:
            outcome = container.on_event(event, log, cancel=self._cancel)
        except MultibranchError as e:
            log_error("event failed", container=container.name, error=str(e))
            raise
        if outcome.failed_sources and self.scan_on_event_failure:
            log_action("event_followup_scan", container=container.name, failed_sources=outcome.failed_sources)
            self._queue_followup(container)
        return outcome

    def _run_organization(self, organization: "OrganizationFolder", log: TaskLog) -> "OrganizationOutcome":
        try:
            outcome = organization.scan(log, cancel=self._cancel)
        except MultibranchError as e:
            log_error("organization scan failed", organization=organization.name, error=str(e))
            raise
        for container in outcome.rescan:
            self._queue_followup(container)
        return outcome

    def shutdown(self, *, cancel: bool = False, wait: bool = True) -> None:
        """Stop accepting work.

        Without ``cancel`` queued passes still run; with ``wait`` this returns
        once they have. With ``cancel``, queued passes are cancelled and
        in-flight passes stop at the next head.
        """
        with self._lanes_lock:
            self._closed = True
            queued = [future for lane in self._lanes.values() for _, _, future in lane]
        if cancel:
            self._cancel.set()
            for future in queued:
                future.cancel()
        elif wait:
            wait_futures(queued)
        self._executor.shutdown(wait=wait, cancel_futures=cancel)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False


def _target_name(target: Any) -> str:
    return getattr(target, "name", repr(target))
