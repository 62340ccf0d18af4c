import logging
import threading
import time
import uuid
from collections import deque
from typing import Dict, Iterable, List, Optional

from .errors import FATAL
from .interfaces import ConversionService, PersistenceSink, ProgressReporter
from .models import (
    Batch, BatchSummary, Job, JobError, Outcome,
    PENDING, QUEUED, RUNNING, SUCCEEDED, FAILED, CANCELLED,
    CONTROL_RUNNING, CONTROL_PAUSED, CONTROL_CANCELLED,
)
from .persistence import MemorySink, PersistenceSynchronizer
from .progress import ProgressAggregator
from .retry import RetryPolicy
from .utils import now_iso

logger = logging.getLogger(__name__)


class BatchHandle:
    """Control and query surface for one submitted batch.

    The queue and control_state are guarded by one condition; pops and the
    queued -> running transition happen together under it, so nothing can
    start once cancel() has drained the queue.
    """

    def __init__(self, scheduler: "Scheduler", batch: Batch, progress: ProgressAggregator):
        self.id = batch.id
        self.batch = batch
        self.progress = progress
        self.control_state = CONTROL_RUNNING
        self.summary: Optional[BatchSummary] = None
        self.workers: List[threading.Thread] = []

        self._scheduler = scheduler
        self._jobs: Dict[str, Job] = {j.id: j for j in batch.jobs}
        self._queue = deque()
        self._cond = threading.Condition()

        self._state_lock = threading.Lock()
        self._remaining = len(batch.jobs)
        self._warnings: Dict[str, str] = {}
        self._done = threading.Event()
        self._started = time.monotonic()

    # ---------- queries ----------
    @property
    def jobs(self) -> List[Job]:
        return list(self.batch.jobs)

    def job(self, job_id: str) -> Job:
        return self._jobs[job_id]

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def snapshot(self) -> Dict[str, int]:
        return self.progress.snapshot()

    # ---------- control (delegates) ----------
    def pause(self):
        self._scheduler.pause(self)

    def resume(self):
        self._scheduler.resume(self)

    def cancel(self):
        self._scheduler.cancel(self)

    def wait(self, timeout: Optional[float] = None) -> Optional[BatchSummary]:
        return self._scheduler.wait(self, timeout)

    # ---------- worker side ----------
    def _claim_next(self) -> Optional[Job]:
        with self._cond:
            while self.control_state == CONTROL_PAUSED:
                self._cond.wait()
            if self.control_state == CONTROL_CANCELLED or not self._queue:
                return None
            job = self._queue.popleft()
            old = job.transition(RUNNING)
            job.started_at = now_iso()
            self.progress.on_transition(job.id, old, RUNNING, job.attempt)
            return job

    def _job_done(self, job: Job, warning: Optional[str]):
        with self._state_lock:
            if warning:
                self._warnings[job.id] = warning
            self._remaining -= 1
            finished = self._remaining == 0
        if finished:
            self._finalize()

    def _finalize(self):
        summary = BatchSummary(batch_id=self.id, elapsed=time.monotonic() - self._started)
        for job in self.batch.jobs:
            if job.status == SUCCEEDED:
                summary.succeeded += 1
            elif job.status == FAILED:
                summary.failed += 1
                if job.last_error is not None:
                    summary.per_job_errors[job.id] = job.last_error
            elif job.status == CANCELLED:
                summary.cancelled += 1
        with self._state_lock:
            summary.persistence_warnings = dict(self._warnings)
        self.summary = summary
        logger.info(
            "Batch %s finished: %d succeeded, %d failed, %d cancelled in %.2fs",
            self.id, summary.succeeded, summary.failed, summary.cancelled, summary.elapsed,
        )
        self.progress.publish_batch("batch_finished")
        self.progress.close()
        self._done.set()


class Scheduler:
    """Runs batches of conversion jobs on a bounded pool of worker threads.

    Each batch gets min(concurrency_limit, len(jobs)) workers pulling from a
    FIFO queue. A worker owns its job from the queued -> running transition
    until the terminal state is persisted and reported; retries stay on the
    same worker.
    """

    def __init__(
        self,
        service: ConversionService,
        sink: Optional[PersistenceSink] = None,
        reporters: Iterable[ProgressReporter] = (),
        sleep=time.sleep,
        drain_timeout: float = 1.0,
    ):
        self.service = service
        self.synchronizer = PersistenceSynchronizer(sink if sink is not None else MemorySink())
        self.reporters = list(reporters)
        self.sleep = sleep
        self.drain_timeout = drain_timeout

    def submit(self, batch: Batch) -> BatchHandle:
        batch.validate()
        if not batch.id:
            batch.id = uuid.uuid4().hex

        progress = ProgressAggregator(batch.id)
        for r in self.reporters:
            progress.subscribe(r)
        progress.seed(PENDING, len(batch.jobs))

        handle = BatchHandle(self, batch, progress)
        policy = RetryPolicy(
            max_attempts=batch.max_attempts,
            backoff_delay=batch.backoff_delay,
            timeout=batch.timeout,
            sleep=self.sleep,
        )

        with handle._cond:
            for job in batch.jobs:
                old = job.transition(QUEUED)
                handle._queue.append(job)
                progress.on_transition(job.id, old, QUEUED)

        size = min(int(batch.concurrency_limit), len(batch.jobs))
        logger.info(
            "Submitting batch %s: %d job(s), %d worker(s), max_attempts=%d, backoff=%.3fs",
            batch.id, len(batch.jobs), size, batch.max_attempts, batch.backoff_delay,
        )
        progress.publish_batch("batch_started")
        for i in range(size):
            name = f"worker-{i+1}"
            t = threading.Thread(
                target=self._worker_loop, args=(handle, policy, name),
                name=f"{batch.id[:8]}-{name}", daemon=True,
            )
            handle.workers.append(t)
            t.start()
        return handle

    def _worker_loop(self, handle: BatchHandle, policy: RetryPolicy, name: str):
        while True:
            job = handle._claim_next()
            if job is None:
                break
            logger.info("[%s] Executing job: %s -> %s", name, job.id, job.input.name)
            try:
                outcome = policy.execute(
                    job, self.service,
                    on_attempt=lambda j: handle.progress.on_attempt(j.id, j.status, j.attempt),
                )
            except BaseException as e:
                # the job must still reach a terminal state or wait() never returns
                logger.exception("[%s] Unexpected error while running job %s", name, job.id)
                outcome = Outcome.failure(JobError(kind=FATAL, message=str(e) or type(e).__name__, attempt=job.attempt))
            self._finish(handle, job, outcome)
        logger.debug("[%s] Worker for batch %s stopped.", name, handle.id)

    def _finish(self, handle: BatchHandle, job: Job, outcome: Outcome):
        if outcome.succeeded:
            job.result = outcome.result
            old = job.transition(SUCCEEDED)
            logger.info("Job %s completed successfully after %d attempt(s).", job.id, job.attempt)
        else:
            job.last_error = outcome.error
            old = job.transition(FAILED)
        job.finished_at = now_iso()
        warning = self.synchronizer.sync(job, handle.id)
        handle.progress.on_transition(job.id, old, job.status, job.attempt)
        handle._job_done(job, warning)

    # ---------- control ----------
    def pause(self, handle: BatchHandle):
        with handle._cond:
            if handle.control_state != CONTROL_RUNNING:
                return
            handle.control_state = CONTROL_PAUSED
        logger.info("Batch %s paused.", handle.id)
        handle.progress.publish_batch("batch_paused")

    def resume(self, handle: BatchHandle):
        with handle._cond:
            if handle.control_state != CONTROL_PAUSED:
                return
            handle.control_state = CONTROL_RUNNING
            handle._cond.notify_all()
        logger.info("Batch %s resumed.", handle.id)
        handle.progress.publish_batch("batch_resumed")

    def cancel(self, handle: BatchHandle):
        """Cancel every job not yet started; running jobs finish normally."""
        with handle._cond:
            if handle.control_state == CONTROL_CANCELLED or handle.done:
                return
            handle.control_state = CONTROL_CANCELLED
            drained = list(handle._queue)
            handle._queue.clear()
            handle._cond.notify_all()

        logger.info("Batch %s cancelled; %d queued job(s) dropped.", handle.id, len(drained))
        handle.progress.publish_batch("batch_cancelled")
        for job in drained:
            old = job.transition(CANCELLED)
            job.finished_at = now_iso()
            warning = self.synchronizer.sync(job, handle.id)
            handle.progress.on_transition(job.id, old, CANCELLED, job.attempt)
            handle._job_done(job, warning)

    def wait(self, handle: BatchHandle, timeout: Optional[float] = None) -> Optional[BatchSummary]:
        """Block until every job is terminal and return the summary.

        Returns None if `timeout` elapses first. Pending progress events get
        up to drain_timeout seconds to reach subscribers.
        """
        if not handle._done.wait(timeout):
            return None
        handle.progress.join(self.drain_timeout)
        return handle.summary

    def run(self, batch: Batch, timeout: Optional[float] = None) -> Optional[BatchSummary]:
        return self.wait(self.submit(batch), timeout)
