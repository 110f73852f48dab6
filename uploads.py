from __future__ import annotations

import logging
import mimetypes
import os
from typing import Callable, List, Optional

from PyQt5 import QtCore

import db
from http_workers import UploadWorker
from models import TrainingUploadRecord, UploadKind

logger = logging.getLogger(__name__)


class UploadLog:
    """Durable, append-only, newest-first audit log of uploaded audio."""

    def __init__(self, store: db.KeyValueStore):
        self._store = store

    def records(self) -> List[TrainingUploadRecord]:
        raw = self._store.get_json(db.TRAINING_UPLOADS_KEY, default=[])
        if not isinstance(raw, list):
            logger.error("Stored upload log is not a list; ignoring it")
            return []
        out: List[TrainingUploadRecord] = []
        for item in raw:
            try:
                out.append(TrainingUploadRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable upload record: %s", e)
        return out

    def append(self, record: TrainingUploadRecord) -> None:
        existing = self._store.get_json(db.TRAINING_UPLOADS_KEY, default=[])
        if not isinstance(existing, list):
            existing = []
        existing.insert(0, record.to_dict())
        self._store.set_json(db.TRAINING_UPLOADS_KEY, existing)


class TrainingUploader(QtCore.QObject):
    """
    Uploads training audio: a file the user picked (initial recitation) or
    bytes recorded by the correct-sample workflow. A record is appended to
    the upload log only after the server acknowledged the upload.
    Emits:
      status(message: str)
      selection_changed(path: object)   # str or None
      uploaded(record: object)
    """

    status = QtCore.pyqtSignal(str)
    selection_changed = QtCore.pyqtSignal(object)
    uploaded = QtCore.pyqtSignal(object)

    def __init__(
        self,
        log: UploadLog,
        upload_url: str,
        parent=None,
        timeout: float = 30.0,
        worker_factory: Callable = UploadWorker,
    ):
        super().__init__(parent)
        self.log = log
        self._url = upload_url
        self._timeout = timeout
        self._worker_factory = worker_factory
        self._workers: list = []
        self.selected_path: Optional[str] = None

    # --------------------------- selection ---------------------------------

    def select_file(self, path: Optional[str]) -> bool:
        media_type = mimetypes.guess_type(path)[0] if path else None
        if path and os.path.isfile(path) and media_type and media_type.startswith("audio/"):
            self.selected_path = path
            self.status.emit(f"Audio file '{os.path.basename(path)}' selected for training.")
            self.selection_changed.emit(path)
            return True
        self.selected_path = None
        self.status.emit("Please select a valid audio file (.mp3, .wav, etc.).")
        self.selection_changed.emit(None)
        return False

    def upload_selected(self) -> Optional[UploadWorker]:
        path = self.selected_path
        if not path:
            self.status.emit("No audio file selected to upload for training.")
            return None
        name = os.path.basename(path)
        try:
            with open(path, "rb") as fh:
                payload = fh.read()
        except OSError as e:
            logger.error("Could not read %s: %s", path, e)
            self.status.emit("Failed to upload initial training audio.")
            return None
        media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        self.status.emit(f"Uploading '{name}' for training...")

        worker = self.submit(name, payload, media_type, UploadKind.INITIAL_RECITATION)

        def _done(_result, path=path, name=name):
            self.status.emit(f"File '{name}' uploaded successfully for initial training.")
            # the user may have picked another file meanwhile
            if self.selected_path == path:
                self.selected_path = None
                self.selection_changed.emit(None)

        def _failed(message):
            logger.error("Error uploading initial training audio: %s", message)
            self.status.emit("Failed to upload initial training audio.")

        worker.completed.connect(_done)
        worker.failed.connect(_failed)
        worker.start()
        return worker

    # --------------------------- shared ------------------------------------

    def submit(
        self,
        file_name: str,
        payload: bytes,
        media_type: str,
        kind: UploadKind,
        text: Optional[str] = None,
        original_mistake_id: Optional[str] = None,
    ) -> UploadWorker:
        """
        Build (but do not start) the worker for one upload. The log entry is
        written when the worker completes; callers connect their own slots
        and call start().
        """
        params = {"sample_type": kind.value}
        if kind is UploadKind.CORRECT_SAMPLE:
            params["reference_text"] = text or ""
            params["original_mistake_id"] = original_mistake_id or ""
        worker = self._worker_factory(
            self._url,
            file_name,
            payload,
            media_type,
            params,
            self,
            timeout=self._timeout,
        )

        def _record(_result):
            record = TrainingUploadRecord(
                file_name=file_name,
                type=kind,
                file_size=len(payload),
                file_type=media_type,
                text=text,
                original_mistake_id=original_mistake_id,
            )
            self.log.append(record)
            self.uploaded.emit(record)

        worker.completed.connect(_record)
        worker.finished.connect(lambda: self._forget(worker))
        worker.finished.connect(worker.deleteLater)
        self._workers.append(worker)
        return worker

    def _forget(self, worker) -> None:
        if worker in self._workers:
            self._workers.remove(worker)
