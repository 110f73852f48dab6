from __future__ import annotations

import json
import logging

from PyQt5 import QtCore, QtNetwork
from PyQt5.QtWebSockets import QWebSocket, QWebSocketProtocol

from errors import ChannelClosed

logger = logging.getLogger(__name__)


class SessionChannel(QtCore.QObject):
    """
    Session socket to the analysis service. Wraps QWebSocket so the engine
    only sees four events:
      opened()
      message_received(text: str)
      closed()
      failed(message: str)
    ``closed`` fires once per socket, whether the close was ours or remote.
    """

    opened = QtCore.pyqtSignal()
    message_received = QtCore.pyqtSignal(str)
    closed = QtCore.pyqtSignal()
    failed = QtCore.pyqtSignal(str)

    def __init__(self, url: str, parent=None):
        super().__init__(parent)
        self.url = url
        self._ws = QWebSocket("", QWebSocketProtocol.VersionLatest, self)
        self._ws.connected.connect(self._on_connected)
        self._ws.disconnected.connect(self._on_disconnected)
        self._ws.textMessageReceived.connect(self.message_received)
        self._ws.error.connect(self._on_error)
        self._closed = False

    def open(self) -> None:
        logger.info("Connecting to %s", self.url)
        self._ws.open(QtCore.QUrl(self.url))

    def is_open(self) -> bool:
        return self._ws.state() == QtNetwork.QAbstractSocket.ConnectedState

    def send_json(self, message: dict) -> None:
        if not self.is_open():
            raise ChannelClosed("Session socket is not open", {"type": message.get("type")})
        self._ws.sendTextMessage(json.dumps(message, ensure_ascii=False))

    def send_binary(self, payload: bytes) -> None:
        if not self.is_open():
            raise ChannelClosed("Session socket is not open", {"size": len(payload)})
        self._ws.sendBinaryMessage(QtCore.QByteArray(payload))

    def close(self) -> None:
        if self._ws.state() != QtNetwork.QAbstractSocket.UnconnectedState:
            self._ws.close()
        elif not self._closed:
            self._mark_closed()

    def _mark_closed(self) -> None:
        self._closed = True
        self.closed.emit()

    @QtCore.pyqtSlot()
    def _on_connected(self) -> None:
        logger.info("WebSocket connected")
        self.opened.emit()

    @QtCore.pyqtSlot()
    def _on_disconnected(self) -> None:
        logger.info("WebSocket disconnected")
        if not self._closed:
            self._mark_closed()

    @QtCore.pyqtSlot(QtNetwork.QAbstractSocket.SocketError)
    def _on_error(self, code) -> None:
        message = self._ws.errorString()
        logger.error("WebSocket error %s: %s", int(code), message)
        self.failed.emit(message)
