from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from PyQt5 import QtCore

import db
from http_workers import SyncWorker
from models import MistakeRecord, VerificationStatus

logger = logging.getLogger(__name__)

SYNC_INTERVAL_MS = 60_000
SYNC_WARMUP_MS = 5_000


class MistakeQueue(QtCore.QObject):
    """
    Newest-first queue of mistake records, persisted on every mutation and
    periodically reconciled with the server.

    A sync submits every unsynced record and, on success, marks exactly the
    ids it submitted. Records added or re-verified while the request is in
    flight keep ``synced=False`` and go out with the next batch. Only one
    request is in flight at a time; overlapping calls are skipped.
    Emits:
      changed()
      sync_finished(ok: bool)
      status(message: str)
    """

    changed = QtCore.pyqtSignal()
    sync_finished = QtCore.pyqtSignal(bool)
    status = QtCore.pyqtSignal(str)

    def __init__(
        self,
        store: db.KeyValueStore,
        sync_url: str,
        parent=None,
        timeout: float = 30.0,
        worker_factory: Callable = SyncWorker,
    ):
        super().__init__(parent)
        self._store = store
        self._sync_url = sync_url
        self._timeout = timeout
        self._worker_factory = worker_factory
        self._worker: Optional[SyncWorker] = None
        self._records: List[MistakeRecord] = self._load()
        # Per-record mutation counter; a sync only marks records whose
        # counter is unchanged since the batch was taken.
        self._revisions: Dict[str, int] = {}
        self._submitted: Dict[str, int] = {}

        self._sync_timer = QtCore.QTimer(self)
        self._sync_timer.setInterval(SYNC_INTERVAL_MS)
        self._sync_timer.timeout.connect(self.sync)
        self._warmup_timer = QtCore.QTimer(self)
        self._warmup_timer.setSingleShot(True)
        self._warmup_timer.setInterval(SYNC_WARMUP_MS)
        self._warmup_timer.timeout.connect(self.sync)

    # --------------------------- persistence --------------------------------

    def _load(self) -> List[MistakeRecord]:
        raw = self._store.get_json(db.MISTAKES_KEY, default=[])
        if not isinstance(raw, list):
            logger.error("Stored mistake queue is not a list; starting empty")
            return []
        records: List[MistakeRecord] = []
        seen = set()
        for item in raw:
            try:
                rec = MistakeRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable stored mistake: %s", e)
                continue
            if rec.id in seen:
                continue
            seen.add(rec.id)
            records.append(rec)
        logger.info("Loaded %d stored mistakes", len(records))
        return records

    def _save(self) -> None:
        self._store.set_json(db.MISTAKES_KEY, [r.to_dict() for r in self._records])
        self.changed.emit()

    # --------------------------- queue -------------------------------------

    @property
    def records(self) -> List[MistakeRecord]:
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def get(self, mistake_id: str) -> MistakeRecord:
        for rec in self._records:
            if rec.id == mistake_id:
                return rec
        raise KeyError(mistake_id)

    def unsynced(self) -> List[MistakeRecord]:
        return [r for r in self._records if not r.synced]

    def add(self, record: MistakeRecord) -> None:
        if any(r.id == record.id for r in self._records):
            raise ValueError(f"Duplicate mistake id {record.id}")
        self._records.insert(0, record)
        self._save()

    def verify(self, mistake_id: str, status) -> MistakeRecord:
        """Record the user's verdict; the record must be re-delivered afterwards."""
        status = VerificationStatus(status)
        rec = self.get(mistake_id)
        rec.verified = status
        rec.synced = False
        self._revisions[rec.id] = self._revisions.get(rec.id, 0) + 1
        self._save()
        self.status.emit(f"Mistake marked as {status.value}.")
        return rec

    # --------------------------- sync --------------------------------------

    @property
    def sync_in_flight(self) -> bool:
        return self._worker is not None

    def start_schedule(self) -> None:
        self._warmup_timer.start()
        self._sync_timer.start()

    def stop_schedule(self) -> None:
        self._warmup_timer.stop()
        self._sync_timer.stop()

    @QtCore.pyqtSlot()
    def sync(self) -> bool:
        """Start one sync attempt. Returns True if a request was issued."""
        if self._worker is not None:
            logger.debug("Sync already in flight; skipping")
            return False
        batch = self.unsynced()
        if not batch:
            return False
        worker = self._worker_factory(
            self._sync_url,
            [r.to_payload() for r in batch],
            self,
            timeout=self._timeout,
        )
        worker.completed.connect(self._on_sync_completed)
        worker.failed.connect(self._on_sync_failed)
        # the Qt child goes away once the thread ends
        worker.finished.connect(worker.deleteLater)
        self._worker = worker
        self._submitted = {r.id: self._revisions.get(r.id, 0) for r in batch}
        logger.info("Syncing %d mistakes", len(batch))
        worker.start()
        return True

    @QtCore.pyqtSlot(list)
    def _on_sync_completed(self, ids: list) -> None:
        self._worker = None
        submitted, self._submitted = self._submitted, {}
        acknowledged = set(ids)
        marked = 0
        for rec in self._records:
            rev = submitted.get(rec.id)
            if rec.id in acknowledged and rev is not None and rev == self._revisions.get(rec.id, 0):
                rec.synced = True
                marked += 1
        self._save()
        logger.info("Synced %d mistakes", marked)
        self.status.emit("Synced mistakes to server.")
        self.sync_finished.emit(True)

    @QtCore.pyqtSlot(str)
    def _on_sync_failed(self, message: str) -> None:
        self._worker = None
        self._submitted = {}
        logger.error("Sync mistakes error: %s", message)
        self.sync_finished.emit(False)

    def close(self) -> None:
        """Stop the schedule and wait for an in-flight sync up to the request timeout."""
        self.stop_schedule()
        worker = self._worker
        if worker is not None and worker.isRunning():
            worker.wait(int(self._timeout * 1000))
            if worker.isRunning():
                # keep the reference; the completion slot clears it
                logger.warning("Sync still in flight at close; leaving it to finish")
                return
        self._worker = None
