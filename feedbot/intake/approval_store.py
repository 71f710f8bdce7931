"""
Approval Store

Authoritative record of every feedback candidate's approval state and of the
Slack messages that have already been through the extractor.

State machine:
    pending -> approved -> (task created) -> removed
    pending -> rejected
Approved and rejected never go back to pending, and a candidate resolved one
way cannot be resolved the other way.

Every mutation rewrites the full snapshot (candidates + processed ids)
before returning, under a single lock, so a restart recovers exactly the
last acknowledged state. Volume is human-rate, so write amplification is
acceptable; an append-only log with compaction is the migration path if it
stops being.

Backends:
- JsonFileApprovalStore: one JSON file, replaced atomically
- SqliteApprovalStore: key-value table, replaced in one transaction
"""

import json
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..common.config import APPROVALS_PATH
from ..common.schemas import (
    CandidateStatus,
    EDITABLE_FIELDS,
    FeedbackCandidate,
    SourceRef,
)

logger = logging.getLogger("feedbot.intake.approval_store")


class InvalidTransition(Exception):
    """Raised when a resolved candidate is asked to flip to the other outcome."""

    def __init__(self, key: str, current: CandidateStatus, requested: CandidateStatus):
        super().__init__(f"Candidate {key} is already {current.value}, cannot mark {requested.value}")
        self.key = key
        self.current = current
        self.requested = requested


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _copy_aside(path: Path) -> Optional[Path]:
    """Copy `path` to `<path>.corrupt-<timestamp>` before it gets rewritten."""
    if not path.exists():
        return None
    target = path.with_name(f"{path.name}.corrupt-{_now().strftime('%Y%m%dT%H%M%S')}")
    if target.exists():
        return target
    try:
        shutil.copy2(path, target)
    except OSError as e:
        logger.error("Could not keep a copy of unreadable approval data: %s", e)
        return None
    logger.warning("Kept a copy of unreadable approval data at %s", target)
    return target


def _from_record(key: str, item: Dict[str, Any]) -> FeedbackCandidate:
    return FeedbackCandidate.model_validate({**item, "key": key})


def _from_legacy(key: str, item: Dict[str, Any]) -> FeedbackCandidate:
    """Convert an entry from the older camelCase `pendingApprovals` layout."""
    original = item.get("originalMessage") or {}
    return FeedbackCandidate(
        key=key,
        category=item.get("type"),
        title=item.get("title") or "(untitled)",
        description=item.get("description", ""),
        priority=item.get("priority"),
        confidence=item.get("confidence", 0),
        source=SourceRef(
            channel=original.get("channelId", ""),
            message_ts=original.get("ts", ""),
            permalink=item.get("messageLink"),
        ),
        message_snippet=item.get("messageSnippet", ""),
        due_date=item.get("dueDate"),
        status=item.get("status", "pending"),
        created_at=_parse_time(item.get("createdAt")) or _now(),
        approved_at=_parse_time(item.get("approvedAt")),
        rejected_at=_parse_time(item.get("rejectedAt")),
    )


class ApprovalStore(ABC):
    """
    In-memory candidate map and processed-message set with snapshot
    persistence delegated to a backend.

    All operations take the same re-entrant lock. Callers must not hold it
    across remote calls; each operation is a single atomic step.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._candidates: Dict[str, FeedbackCandidate] = {}
        # dict keeps insertion order for a stable snapshot
        self._processed: Dict[str, None] = {}
        self.last_saved: Optional[datetime] = None
        self.persist_failures = 0
        self._load()

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _read_snapshot(self) -> Optional[Dict[str, Any]]:
        """Return the last persisted snapshot, or None if there is none."""

    @abstractmethod
    def _write_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """Durably replace the persisted snapshot. May raise."""

    # ------------------------------------------------------------------
    # Snapshot handling
    # ------------------------------------------------------------------

    def _set_aside(self) -> None:
        """Keep an unreadable snapshot out of the way of the next write."""

    def _load(self) -> None:
        try:
            snapshot = self._read_snapshot()
        except Exception:
            logger.exception("Failed to load approval data, starting empty")
            self._set_aside()
            return
        if not snapshot:
            return
        if not isinstance(snapshot, dict):
            logger.error("Approval data is not an object, starting empty")
            self._set_aside()
            return

        candidates: Dict[str, FeedbackCandidate] = {}
        skipped = 0
        if "pendingApprovals" in snapshot:
            entries = [
                (entry[0], entry[1], _from_legacy)
                for entry in snapshot.get("pendingApprovals") or []
                if isinstance(entry, (list, tuple)) and len(entry) == 2
            ]
            processed = snapshot.get("processedMessages") or []
            last_saved = snapshot.get("lastSaved")
        else:
            entries = []
            for status in CandidateStatus:
                bucket = snapshot.get(status.value) or {}
                if not isinstance(bucket, dict):
                    logger.error("Approval bucket %r is malformed, skipping it", status.value)
                    skipped += 1
                    continue
                entries.extend((key, item, _from_record) for key, item in bucket.items())
            processed = snapshot.get("processed") or []
            last_saved = snapshot.get("last_saved")

        for key, item, convert in entries:
            try:
                candidates[key] = convert(key, item)
            except (ValueError, TypeError, AttributeError) as e:
                skipped += 1
                logger.error("Skipping unreadable approval record %s: %s", key, e)

        if skipped:
            self._set_aside()

        self._candidates = candidates
        self._processed = dict.fromkeys(p for p in processed if isinstance(p, str))
        try:
            self.last_saved = _parse_time(last_saved)
        except ValueError:
            self.last_saved = None
        logger.info(
            "Loaded %d candidates and %d processed messages (%d skipped)",
            len(self._candidates), len(self._processed), skipped,
        )

    def snapshot(self) -> Dict[str, Any]:
        """Full persisted view: candidates bucketed by state, processed ids."""
        with self._lock:
            data: Dict[str, Any] = {status.value: {} for status in CandidateStatus}
            for key, candidate in self._candidates.items():
                data[candidate.status.value][key] = candidate.model_dump(mode="json")
            data["processed"] = list(self._processed)
            data["last_saved"] = self.last_saved.isoformat() if self.last_saved else None
            return data

    def _persist(self) -> None:
        """Write the snapshot; failures are logged loudly but not raised.

        The in-memory state stays authoritative for this process.
        """
        saved_at = _now()
        previous = self.last_saved
        self.last_saved = saved_at
        try:
            self._write_snapshot(self.snapshot())
        except Exception:
            self.last_saved = previous
            self.persist_failures += 1
            logger.exception(
                "Failed to persist approval data (%d failures so far); "
                "current state will NOT survive a restart",
                self.persist_failures,
            )

    # ------------------------------------------------------------------
    # Candidate operations
    # ------------------------------------------------------------------

    def register(self, key: str, candidate: FeedbackCandidate) -> FeedbackCandidate:
        """Insert or overwrite `key` as a fresh pending candidate."""
        with self._lock:
            registered = candidate.model_copy(
                update={
                    "key": key,
                    "status": CandidateStatus.PENDING,
                    "created_at": _now(),
                    "approved_at": None,
                    "rejected_at": None,
                },
                deep=True,
            )
            if key in self._candidates:
                logger.info("Overwriting existing candidate %s", key)
            self._candidates[key] = registered
            self._persist()
            return registered.model_copy(deep=True)

    def get(self, key: str) -> Optional[FeedbackCandidate]:
        with self._lock:
            candidate = self._candidates.get(key)
            return candidate.model_copy(deep=True) if candidate else None

    def approve(self, key: str, overrides: Optional[Dict[str, Any]] = None) -> Optional[FeedbackCandidate]:
        """
        Mark `key` approved, merging reviewer edits.

        Approving an already approved candidate re-stamps approved_at.

        Returns:
            The updated candidate, or None if `key` is unknown

        Raises:
            InvalidTransition: if the candidate was rejected
            ValueError: if an override does not validate
        """
        with self._lock:
            current = self._candidates.get(key)
            if current is None:
                return None
            if current.status == CandidateStatus.REJECTED:
                raise InvalidTransition(key, current.status, CandidateStatus.APPROVED)

            updates: Dict[str, Any] = {}
            for field, value in (overrides or {}).items():
                if field in EDITABLE_FIELDS:
                    updates[field] = value
                else:
                    logger.warning("Ignoring non-editable override %r for %s", field, key)

            approved = FeedbackCandidate.model_validate({
                **current.model_dump(),
                **updates,
                "status": CandidateStatus.APPROVED,
                "approved_at": _now(),
            })
            self._candidates[key] = approved
            self._persist()
            return approved.model_copy(deep=True)

    def reject(self, key: str) -> Optional[FeedbackCandidate]:
        """
        Mark `key` rejected.

        Returns:
            The updated candidate, or None if `key` is unknown

        Raises:
            InvalidTransition: if the candidate was approved
        """
        with self._lock:
            current = self._candidates.get(key)
            if current is None:
                return None
            if current.status == CandidateStatus.APPROVED:
                raise InvalidTransition(key, current.status, CandidateStatus.REJECTED)

            rejected = current.model_copy(
                update={"status": CandidateStatus.REJECTED, "rejected_at": _now()},
                deep=True,
            )
            self._candidates[key] = rejected
            self._persist()
            return rejected.model_copy(deep=True)

    def remove(self, key: str) -> bool:
        """Delete a candidate (after its task was created). False if absent."""
        with self._lock:
            if self._candidates.pop(key, None) is None:
                return False
            self._persist()
            return True

    def list_approved(self) -> List[FeedbackCandidate]:
        """Approved candidates whose task has not been created yet."""
        return self._list(CandidateStatus.APPROVED)

    def list_pending(self) -> List[FeedbackCandidate]:
        return self._list(CandidateStatus.PENDING)

    def _list(self, status: CandidateStatus) -> List[FeedbackCandidate]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._candidates.values()
                if c.status == status
            ]

    # ------------------------------------------------------------------
    # Dedup set
    # ------------------------------------------------------------------

    def mark_processed(self, message_id: str) -> None:
        with self._lock:
            if message_id in self._processed:
                return
            self._processed[message_id] = None
            self._persist()

    def is_processed(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._processed

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self, max_age_days: float = 7, now: Optional[datetime] = None) -> int:
        """Delete candidates created more than `max_age_days` ago, any state.

        Returns:
            Number of candidates removed
        """
        cutoff = (now or _now()) - timedelta(days=max_age_days)
        with self._lock:
            stale = [k for k, c in self._candidates.items() if c.created_at < cutoff]
            for key in stale:
                del self._candidates[key]
            if stale:
                logger.info("Cleared %d old approvals", len(stale))
                self._persist()
            return len(stale)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            stats = {status.value: 0 for status in CandidateStatus}
            for candidate in self._candidates.values():
                stats[candidate.status.value] += 1
            stats["total"] = len(self._candidates)
            stats["processed"] = len(self._processed)
            stats["persist_failures"] = self.persist_failures
            return stats


class JsonFileApprovalStore(ApprovalStore):
    """Snapshot kept in a single JSON file (default ~/.feedbot/data/approvals.json)."""

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path or APPROVALS_PATH)
        super().__init__()

    @property
    def path(self) -> Path:
        return self._path

    def _read_snapshot(self) -> Optional[Dict[str, Any]]:
        if not self._path.exists():
            return None
        with open(self._path) as f:
            return json.load(f)

    def _set_aside(self) -> None:
        _copy_aside(self._path)

    def _write_snapshot(self, snapshot: Dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Write beside the target then rename, so readers never see a torn file
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".approvals-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(snapshot, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


class SqliteApprovalStore(ApprovalStore):
    """
    Snapshot kept in a SQLite key-value table.

    Rows:
    - candidate:<key>   -> candidate JSON
    - processed:<id>    -> "" (membership only)
    - meta:last_saved   -> ISO timestamp
    """

    CANDIDATE_PREFIX = "candidate:"
    PROCESSED_PREFIX = "processed:"
    LAST_SAVED_KEY = "meta:last_saved"
    _BUCKETS = tuple(status.value for status in CandidateStatus)

    def __init__(self, db_path: str):
        self._db_path = str(db_path)
        self._init_db()
        super().__init__()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """
                )
        finally:
            conn.close()

    def _read_snapshot(self) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT key, value FROM kv ORDER BY rowid").fetchall()
        finally:
            conn.close()
        if not rows:
            return None

        snapshot: Dict[str, Any] = {status.value: {} for status in CandidateStatus}
        snapshot["processed"] = []
        snapshot["last_saved"] = None
        for row in rows:
            key = row["key"]
            if key.startswith(self.CANDIDATE_PREFIX):
                try:
                    item = json.loads(row["value"])
                except ValueError as e:
                    logger.error("Skipping unreadable approval row %s: %s", key, e)
                    self._set_aside()
                    continue
                status = item.get("status") if isinstance(item, dict) else None
                # unknown states land in pending and fail validation on load
                bucket = status if status in self._BUCKETS else CandidateStatus.PENDING.value
                snapshot[bucket][key[len(self.CANDIDATE_PREFIX):]] = item
            elif key.startswith(self.PROCESSED_PREFIX):
                snapshot["processed"].append(key[len(self.PROCESSED_PREFIX):])
            elif key == self.LAST_SAVED_KEY:
                snapshot["last_saved"] = row["value"]
        return snapshot

    def _set_aside(self) -> None:
        _copy_aside(Path(self._db_path))

    def _write_snapshot(self, snapshot: Dict[str, Any]) -> None:
        rows = []
        for status in CandidateStatus:
            for key, item in snapshot.get(status.value, {}).items():
                rows.append((self.CANDIDATE_PREFIX + key, json.dumps(item)))
        rows.extend((self.PROCESSED_PREFIX + mid, "") for mid in snapshot.get("processed", []))
        if snapshot.get("last_saved"):
            rows.append((self.LAST_SAVED_KEY, snapshot["last_saved"]))

        conn = self._connect()
        try:
            # sqlite3's context manager commits or rolls back the whole block
            with conn:
                conn.execute("DELETE FROM kv")
                conn.executemany("INSERT INTO kv (key, value) VALUES (?, ?)", rows)
        finally:
            conn.close()


def create_store(backend: str = "json", path: Optional[str] = None) -> ApprovalStore:
    """Build the configured store backend."""
    if backend == "sqlite":
        db_path = path or str(APPROVALS_PATH.with_suffix(".db"))
        if db_path.endswith(".json"):
            db_path = db_path[: -len(".json")] + ".db"
        return SqliteApprovalStore(db_path)
    if backend != "json":
        raise ValueError(f"Unknown approval store backend: {backend}")
    return JsonFileApprovalStore(Path(path) if path else None)
