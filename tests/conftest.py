"""
Shared fixtures for the recitation client tests.

Devices, sockets and HTTP are replaced by small fakes so everything runs
headless and synchronously on the test thread.
"""

import json

import numpy as np
import pytest
from PyQt5 import QtCore

import db
from http_workers import SyncWorker, UploadWorker
from microphone import MicrophoneOwnership


@pytest.fixture(scope="session", autouse=True)
def qapp():
    app = QtCore.QCoreApplication.instance()
    if app is None:
        app = QtCore.QCoreApplication([])
    return app


@pytest.fixture
def store():
    s = db.KeyValueStore.open(":memory:")
    yield s
    s.close()


@pytest.fixture
def ownership():
    return MicrophoneOwnership()


# ─────────────────────────────── channel ───────────────────────────────────


class FakeChannel(QtCore.QObject):
    opened = QtCore.pyqtSignal()
    message_received = QtCore.pyqtSignal(str)
    closed = QtCore.pyqtSignal()
    failed = QtCore.pyqtSignal(str)

    def __init__(self, url, parent=None):
        super().__init__(parent)
        self.url = url
        self.open_calls = 0
        self.connected = False
        self.close_calls = 0
        self.sent_json = []
        self.sent_binary = []

    def open(self):
        self.open_calls += 1

    def is_open(self):
        return self.connected

    def send_json(self, message):
        from errors import ChannelClosed

        if not self.connected:
            raise ChannelClosed("not open")
        self.sent_json.append(message)

    def send_binary(self, payload):
        from errors import ChannelClosed

        if not self.connected:
            raise ChannelClosed("not open")
        self.sent_binary.append(payload)

    def close(self):
        self.close_calls += 1
        if self.connected:
            self.connected = False
            self.closed.emit()

    # test helpers
    def accept(self):
        self.connected = True
        self.opened.emit()

    def deliver(self, message):
        self.message_received.emit(message if isinstance(message, str) else json.dumps(message))

    def drop(self):
        self.connected = False
        self.closed.emit()

    def fail(self, message="boom"):
        self.failed.emit(message)


@pytest.fixture
def channels():
    """Channel factory that remembers every channel it made."""
    made = []

    def factory(url, parent=None):
        ch = FakeChannel(url)
        made.append(ch)
        return ch

    factory.made = made
    return factory


# ─────────────────────────────── devices ───────────────────────────────────


class FakeInputStream:
    def __init__(self, samplerate, callback):
        self.samplerate = samplerate
        self.callback = callback
        self.stopped = False
        self.closed = False

    def feed(self, samples):
        block = np.asarray(samples, dtype=np.float32).reshape(-1, 1)
        self.callback(block, block.shape[0], None, None)

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True


@pytest.fixture
def streams():
    """Input stream factory; set ``streams.error`` to make the next open fail."""
    made = []

    def factory(samplerate, callback):
        if factory.error is not None:
            err, factory.error = factory.error, None
            raise err
        s = FakeInputStream(samplerate, callback)
        made.append(s)
        return s

    factory.made = made
    factory.error = None
    return factory


class FakePlayer:
    def __init__(self, samplerate, on_finished=None):
        self.sr = samplerate
        self.on_finished = on_finished
        self.data = None
        self.played = False
        self.closed = False

    def set_data(self, data):
        self.data = np.asarray(data)

    def play(self):
        self.played = True

    def stop(self):
        pass

    def close(self):
        self.closed = True

    def finish(self):
        if self.on_finished is not None:
            self.on_finished()


@pytest.fixture
def players():
    made = []

    def factory(samplerate, on_finished=None):
        p = FakePlayer(samplerate, on_finished)
        made.append(p)
        return p

    factory.made = made
    return factory


# ─────────────────────────────── http ──────────────────────────────────────


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.ok = 200 <= status_code < 400
        self._payload = payload if payload is not None else {"status": "ok"}

    def json(self):
        return self._payload


class FakeServer:
    """
    Stands in for requests.post. ``responses`` is a list of status codes
    (or exceptions) consumed in order; default 200.
    """

    def __init__(self):
        self.calls = []
        self.responses = []

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        outcome = self.responses.pop(0) if self.responses else 200
        if isinstance(outcome, Exception):
            raise outcome
        return FakeResponse(outcome)


@pytest.fixture
def http(monkeypatch):
    """Fake server with workers run inline on the test thread."""
    server = FakeServer()
    monkeypatch.setattr("http_workers.requests.post", server.post)
    monkeypatch.setattr(SyncWorker, "start", SyncWorker.run)
    monkeypatch.setattr(UploadWorker, "start", UploadWorker.run)
    return server


@pytest.fixture
def threaded_http(monkeypatch):
    """Fake server with workers on real threads; pair with ``settle``."""
    server = FakeServer()
    monkeypatch.setattr("http_workers.requests.post", server.post)
    return server


@pytest.fixture
def settle():
    """Returns a helper that waits for a worker, then delivers queued signals and deleteLater calls."""

    def run(worker=None):
        if worker is not None:
            assert worker.wait(5000)
        QtCore.QCoreApplication.processEvents()
        QtCore.QCoreApplication.sendPostedEvents(None, QtCore.QEvent.DeferredDelete)

    return run
