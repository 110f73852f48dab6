# recite_live.py
from __future__ import annotations

import logging
import signal
import sys
from typing import Dict, Optional

from PyQt5 import QtCore

import db
from app_settings import (
    default_settings,
    load_settings,
    settings_path,
    sync_mistakes_url,
    upload_url,
)
from correct_sample import CorrectSampleRecorder
from logging_utils import configure_logging
from mistake_queue import MistakeQueue
from session import RecitationSession
from uploads import TrainingUploader, UploadLog

logger = logging.getLogger(__name__)


class RecitationClient(QtCore.QObject):
    """
    Wires the engine together: durable store, user id, mistake queue with
    background sync, training uploads, the live session and the
    correct-sample recorder. All human-readable outcomes end up on
    ``status_changed``.
    """

    status_changed = QtCore.pyqtSignal(str)

    def __init__(self, settings: Optional[Dict] = None, store: Optional[db.KeyValueStore] = None, parent=None):
        super().__init__(parent)
        self.settings = settings or load_settings(default_settings(), settings_path())
        timeout = float(self.settings.get("request_timeout", 30.0))
        sr = int(self.settings["sample_rate"])

        # back-end
        self.store = store or db.KeyValueStore.open(self.settings["db_path"])
        self.user_id = db.load_or_create_user_id(self.store)
        self.mistakes = MistakeQueue(self.store, sync_mistakes_url(self.settings), self, timeout=timeout)
        self.uploader = TrainingUploader(UploadLog(self.store), upload_url(self.settings), self, timeout=timeout)
        self.session = RecitationSession(self.mistakes, self.settings, self)
        self.correct_sample = CorrectSampleRecorder(sr, self.uploader, self.mistakes, self)

        for source in (self.mistakes.status, self.uploader.status, self.session.status_changed,
                       self.correct_sample.status):
            source.connect(self._on_status)

    @QtCore.pyqtSlot(str)
    def _on_status(self, message: str) -> None:
        logger.info("%s", message)
        self.status_changed.emit(message)

    def start(self) -> None:
        self.mistakes.start_schedule()

    def verify_mistake(self, mistake_id: str, status: str) -> None:
        self.mistakes.verify(mistake_id, status)

    def record_correct_sample(self, mistake_id: str) -> bool:
        rec = self.mistakes.get(mistake_id)
        return self.correct_sample.start(rec.id, rec.reference_segment)

    def close(self) -> None:
        """Release every device, timer and socket; safe to call twice."""
        self.correct_sample.cancel()
        self.session.close()
        self.mistakes.close()
        self.store.close()


# ────────────────────────────── main ───────────────────────────────────────


def main() -> None:
    app = QtCore.QCoreApplication(sys.argv)
    settings = load_settings(default_settings(), settings_path())
    configure_logging(settings.get("log_level", "INFO"))

    client = RecitationClient(settings)
    logger.info("User id: %s", client.user_id)
    client.start()
    client.session.start_listening()

    # Let Python see Ctrl+C while the Qt loop runs
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    heartbeat = QtCore.QTimer()
    heartbeat.start(200)
    heartbeat.timeout.connect(lambda: None)

    ret = app.exec_()
    client.close()
    sys.exit(ret)


if __name__ == "__main__":
    main()
