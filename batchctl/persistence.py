import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

from .errors import DuplicateRecord, PersistenceError
from .interfaces import PersistenceSink
from .models import Job, identity

logger = logging.getLogger(__name__)


def job_record(job: Job, batch_id: str) -> Dict[str, Any]:
    """Durable view of a job. Built from the job alone, so repeated calls for
    the same terminal state produce identical records."""
    rec = {
        "batch_id": batch_id,
        "file_name": job.input.name,
        "job_id": job.id,
        "status": job.status,
        "attempts": job.attempt,
        "original_content": job.input.content,
        "converted_content": None,
        "metadata": None,
        "error_kind": None,
        "error_message": None,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
    }
    if job.result is not None:
        rec["converted_content"] = job.result.content
        rec["metadata"] = dict(job.result.metadata)
    if job.last_error is not None:
        rec["error_kind"] = job.last_error.kind
        rec["error_message"] = job.last_error.message
    return rec


class PersistenceSynchronizer:
    """Upsert terminal job state into a PersistenceSink by logical identity.

    find -> update, else insert; an insert that loses a race to a concurrent
    writer falls back to update. Syncs of the same identity are serialized
    in-process. Sink failures are logged and returned as warning text, never
    raised.
    """

    def __init__(self, sink: PersistenceSink):
        self.sink = sink
        # identity -> [lock, holders]; an entry lives only while someone uses it
        self._locks: Dict[Any, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, key):
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def upsert(self, job: Job, batch_id: str):
        key = identity(batch_id, job)
        record = job_record(job, batch_id)
        with self._locked(key):
            try:
                if self.sink.find(key) is not None:
                    self.sink.update(key, record)
                    return
                try:
                    self.sink.insert(record)
                except DuplicateRecord:
                    logger.info("Record for %s/%s appeared concurrently; updating", *key)
                    self.sink.update(key, record)
            except PersistenceError:
                raise
            except Exception as e:
                raise PersistenceError(f"{type(e).__name__}: {e}") from e

    def sync(self, job: Job, batch_id: str) -> Optional[str]:
        try:
            self.upsert(job, batch_id)
        except PersistenceError as e:
            logger.error("Could not persist job %s (%s): %s", job.id, job.status, e)
            return str(e)
        return None


class MemorySink:
    """In-process PersistenceSink keyed by (batch_id, file_name)."""

    def __init__(self):
        self._records: Dict[Any, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.inserts = 0
        self.updates = 0

    def find(self, identity) -> Optional[Dict[str, Any]]:
        with self._lock:
            rec = self._records.get(tuple(identity))
            return dict(rec) if rec is not None else None

    def insert(self, record: Dict[str, Any]) -> None:
        key = (record["batch_id"], record["file_name"])
        with self._lock:
            if key in self._records:
                raise DuplicateRecord(f"record for {key[0]}/{key[1]} already exists")
            self._records[key] = dict(record)
            self.inserts += 1

    def update(self, identity, record: Dict[str, Any]) -> None:
        key = tuple(identity)
        with self._lock:
            if key not in self._records:
                raise PersistenceError(f"no record for {key[0]}/{key[1]} to update")
            self._records[key] = dict(record)
            self.updates += 1

    def records(self):
        with self._lock:
            return [dict(r) for r in self._records.values()]

    def __len__(self):
        with self._lock:
            return len(self._records)
