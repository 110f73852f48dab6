from __future__ import annotations

import logging
from typing import Dict, List, Optional

import requests
from PyQt5 import QtCore

from errors import SyncFailure, UploadFailure

logger = logging.getLogger(__name__)


def _check_response(response: requests.Response, error_cls, what: str) -> object:
    if not response.ok:
        raise error_cls(f"{what} failed", status_code=response.status_code)
    try:
        return response.json()
    except ValueError:
        return None


class SyncWorker(QtCore.QThread):
    """
    POSTs one batch of mistake records in a background thread so the event
    loop stays responsive. The submitted ids are fixed at construction.
    Emits:
      completed(ids: list)
      failed(message: str)
    """

    completed = QtCore.pyqtSignal(list)
    failed = QtCore.pyqtSignal(str)

    def __init__(
        self,
        url: str,
        records: List[Dict],
        parent=None,
        timeout: float = 30.0,
    ):
        super().__init__(parent)
        self._url = url
        self._records = records
        self._timeout = timeout
        self.ids = [r["id"] for r in records]

    def run(self) -> None:
        try:
            response = requests.post(
                self._url,
                json={"mistakes": self._records},
                timeout=self._timeout,
            )
            _check_response(response, SyncFailure, "Mistake sync")
        except SyncFailure as e:
            self.failed.emit(str(e))
            return
        except requests.RequestException as e:
            self.failed.emit(str(SyncFailure("Mistake sync failed", context={"error": str(e)})))
            return
        self.completed.emit(list(self.ids))


class UploadWorker(QtCore.QThread):
    """
    Sends one audio artifact as multipart form data.
    Emits:
      completed(result: object)
      failed(message: str)
    """

    completed = QtCore.pyqtSignal(object)
    failed = QtCore.pyqtSignal(str)

    def __init__(
        self,
        url: str,
        file_name: str,
        payload: bytes,
        media_type: str,
        params: Dict[str, str],
        parent=None,
        timeout: float = 30.0,
    ):
        super().__init__(parent)
        self._url = url
        self.file_name = file_name
        self.payload = payload
        self.media_type = media_type
        self.params = dict(params)
        self._timeout = timeout

    def run(self) -> None:
        try:
            response = requests.post(
                self._url,
                params=self.params,
                files={"file": (self.file_name, self.payload, self.media_type)},
                timeout=self._timeout,
            )
            result: Optional[object] = _check_response(response, UploadFailure, "Upload")
        except UploadFailure as e:
            self.failed.emit(str(e))
            return
        except requests.RequestException as e:
            self.failed.emit(str(UploadFailure("Upload failed", context={"error": str(e)})))
            return
        logger.info("Upload of %s acknowledged: %r", self.file_name, result)
        self.completed.emit(result)
