"""Live progress for a batch.

The scheduler reports every job status change here. Counts are updated
synchronously under a lock that belongs to the counts alone; delivery to
subscribers happens on a separate dispatcher thread so a slow or failing
subscriber never holds up a worker.
"""

import logging
import queue
import threading
from typing import Dict, Optional

from .models import JOB_STATUSES, ProgressEvent

logger = logging.getLogger(__name__)

_STOP = object()


class ProgressAggregator:
    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        self._counts = {s: 0 for s in JOB_STATUSES}
        self._counts_lock = threading.Lock()
        self._subscribers = []
        self._subs_lock = threading.Lock()
        self._events: "queue.Queue" = queue.Queue()
        self._closed = False
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name=f"progress-{batch_id}", daemon=True
        )
        self._dispatcher.start()

    # ---------- subscribers ----------
    def subscribe(self, reporter):
        """Add a reporter: anything with notify(event), or a plain callable."""
        with self._subs_lock:
            self._subscribers.append(reporter)

    def unsubscribe(self, reporter):
        with self._subs_lock:
            if reporter in self._subscribers:
                self._subscribers.remove(reporter)

    # ---------- inputs from the scheduler ----------
    def seed(self, status: str, n: int):
        with self._counts_lock:
            self._counts[status] += n

    def on_transition(self, job_id: str, from_status: Optional[str], to_status: str, attempt: int = 0):
        with self._counts_lock:
            if from_status is not None:
                self._counts[from_status] -= 1
            self._counts[to_status] += 1
        self._publish(ProgressEvent(
            batch_id=self.batch_id, kind="transition", job_id=job_id,
            from_status=from_status, to_status=to_status, attempt=attempt,
        ))

    def on_attempt(self, job_id: str, status: str, attempt: int):
        self._publish(ProgressEvent(
            batch_id=self.batch_id, kind="attempt", job_id=job_id,
            from_status=status, to_status=status, attempt=attempt,
        ))

    def publish_batch(self, kind: str = "batch"):
        self._publish(ProgressEvent(batch_id=self.batch_id, kind=kind, counts=self.snapshot()))

    def snapshot(self) -> Dict[str, int]:
        with self._counts_lock:
            return dict(self._counts)

    # ---------- delivery ----------
    def _publish(self, event: ProgressEvent):
        if not self._closed:
            self._events.put(event)

    def _deliver(self, event: ProgressEvent):
        with self._subs_lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            notify = getattr(sub, "notify", sub)
            try:
                notify(event)
            except Exception:
                logger.exception("Progress subscriber %r failed on %s event", sub, event.kind)

    def _dispatch_loop(self):
        while True:
            event = self._events.get()
            if event is _STOP:
                return
            self._deliver(event)

    def close(self):
        """Stop accepting events; the dispatcher exits after delivering what is queued."""
        if self._closed:
            return
        self._closed = True
        self._events.put(_STOP)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the dispatcher to finish after close(). True when drained."""
        self._dispatcher.join(timeout)
        return not self._dispatcher.is_alive()
