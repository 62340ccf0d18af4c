import json
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from .config import validate_config_value
from .db import connect_db
from .errors import DuplicateRecord, PersistenceError
from .models import JOB_STATUSES, FAILED
from .utils import now_iso

RECORD_FIELDS = (
    "batch_id", "file_name", "job_id", "status", "attempts",
    "original_content", "converted_content", "metadata",
    "error_kind", "error_message", "started_at", "finished_at",
)


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    value = validate_config_value(key, value)
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )


# ---------- Conversion records ----------
def _row_values(record: Dict[str, Any]) -> Tuple:
    values = []
    for f in RECORD_FIELDS:
        v = record.get(f)
        if f == "metadata" and v is not None and not isinstance(v, str):
            v = json.dumps(v, ensure_ascii=False, sort_keys=True)
        values.append(v)
    return tuple(values)


def row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
    rec = dict(row)
    if rec.get("metadata"):
        rec["metadata"] = json.loads(rec["metadata"])
    return rec


def find_record(conn, batch_id: str, file_name: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        "SELECT * FROM conversion_files WHERE batch_id=? AND file_name=?",
        (batch_id, file_name),
    ).fetchone()
    return row_to_record(row) if row else None


def insert_record(conn, record: Dict[str, Any]):
    ts = now_iso()
    cols = ", ".join(RECORD_FIELDS)
    marks = ", ".join("?" for _ in RECORD_FIELDS)
    try:
        with conn:
            conn.execute(
                f"INSERT INTO conversion_files ({cols}, created_at, updated_at) VALUES ({marks}, ?, ?)",
                _row_values(record) + (ts, ts),
            )
    except sqlite3.IntegrityError as e:
        raise DuplicateRecord(
            f"record for {record.get('batch_id')}/{record.get('file_name')} already exists ({e})"
        )


def update_record(conn, batch_id: str, file_name: str, record: Dict[str, Any]) -> bool:
    fields = [f for f in RECORD_FIELDS if f not in ("batch_id", "file_name")]
    assignments = ", ".join(f"{f}=?" for f in fields)
    values = dict(zip(RECORD_FIELDS, _row_values(record)))
    with conn:
        res = conn.execute(
            f"UPDATE conversion_files SET {assignments}, updated_at=? WHERE batch_id=? AND file_name=?",
            tuple(values[f] for f in fields) + (now_iso(), batch_id, file_name),
        )
    return res.rowcount == 1


# ---------- Queries ----------
def list_records(conn, batch_id: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM conversion_files"
    clauses, params = [], []
    if batch_id:
        clauses.append("batch_id=?")
        params.append(batch_id)
    if status:
        clauses.append("status=?")
        params.append(status)
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    rows = conn.execute(sql + " ORDER BY batch_id ASC, id ASC", params).fetchall()
    return [row_to_record(r) for r in rows]


def failed_records(conn, batch_id: str) -> List[Dict[str, Any]]:
    return list_records(conn, batch_id=batch_id, status=FAILED)


def counts(conn, batch_id: Optional[str] = None) -> Dict[str, int]:
    out = {}
    for s in JOB_STATUSES:
        if batch_id:
            row = conn.execute(
                "SELECT COUNT(1) AS c FROM conversion_files WHERE status=? AND batch_id=?",
                (s, batch_id),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT COUNT(1) AS c FROM conversion_files WHERE status=?",
                (s,),
            ).fetchone()
        out[s] = row["c"]
    return out


# ---------- Conversion cache ----------
def cache_get(conn, key: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        "SELECT converted_content, metadata FROM conversion_cache WHERE content_hash=?",
        (key,),
    ).fetchone()
    if not row:
        return None
    return {
        "converted_content": row["converted_content"],
        "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
    }


def cache_put(conn, key: str, converted: str, metadata: Optional[Dict[str, Any]] = None):
    with conn:
        conn.execute(
            "INSERT INTO conversion_cache(content_hash, converted_content, metadata, created_at) "
            "VALUES(?,?,?,?) ON CONFLICT(content_hash) DO UPDATE SET "
            "converted_content=excluded.converted_content, metadata=excluded.metadata",
            (key, converted, json.dumps(metadata or {}, sort_keys=True), now_iso()),
        )


class SqliteSink:
    """PersistenceSink over the conversion_files table.

    Every call opens its own connection, so worker threads never share one.
    sqlite3 errors surface as PersistenceError.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path

    def _run(self, fn, *args):
        try:
            conn = connect_db(self.path)
        except sqlite3.Error as e:
            raise PersistenceError(f"DB error while connecting: {e}")
        try:
            return fn(conn, *args)
        except sqlite3.Error as e:
            raise PersistenceError(f"DB error: {e}")
        finally:
            conn.close()

    def find(self, identity) -> Optional[Dict[str, Any]]:
        batch_id, file_name = identity
        return self._run(find_record, batch_id, file_name)

    def insert(self, record: Dict[str, Any]) -> None:
        self._run(insert_record, record)

    def update(self, identity, record: Dict[str, Any]) -> None:
        batch_id, file_name = identity
        if not self._run(update_record, batch_id, file_name, record):
            raise PersistenceError(f"no record for {batch_id}/{file_name} to update")
