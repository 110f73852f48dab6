from __future__ import annotations

import logging
import queue
from typing import Callable, Optional

import numpy as np
from PyQt5 import QtCore

from audio_utils import encode_audio, join_blocks
from errors import ChannelError
from microphone import MICROPHONE, MicrophoneOwnership, close_stream, open_input_stream

logger = logging.getLogger(__name__)

FLUSH_INTERVAL_MS = 500
LIVE_TAIL_SECONDS = 1.0
OWNER_NAME = "live-capture"


class AudioCapturePipeline(QtCore.QObject):
    """
    Owns the microphone while listening. Device blocks are queued by the
    PortAudio callback and drained on the Qt thread; every FLUSH_INTERVAL_MS
    the buffered audio goes out over the attached channel as one binary frame.
    Emits:
      capturing_changed(active: bool)
      frame_sent(size: int)
    """

    capturing_changed = QtCore.pyqtSignal(bool)
    frame_sent = QtCore.pyqtSignal(int)

    def __init__(
        self,
        samplerate: int,
        parent=None,
        ownership: MicrophoneOwnership = MICROPHONE,
        stream_factory: Callable = open_input_stream,
    ):
        super().__init__(parent)
        self.sr = samplerate
        self.channel = None
        self._ownership = ownership
        self._stream_factory = stream_factory
        self._stream = None
        self._capturing = False

        self._rec_queue: queue.Queue[np.ndarray] = queue.Queue(maxsize=256)
        self._chunks: list[np.ndarray] = []
        self._xrun_count = 0

        # Small ring buffer with the most recent second for voice activity
        self._tail_nsamples = int(self.sr * LIVE_TAIL_SECONDS)
        self._live_ring = np.zeros(self._tail_nsamples, dtype=np.float32)
        self._live_write = 0

        self._flush_timer = QtCore.QTimer(self)
        self._flush_timer.setInterval(FLUSH_INTERVAL_MS)
        self._flush_timer.timeout.connect(self.flush)

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    @property
    def xrun_count(self) -> int:
        return self._xrun_count

    def attach(self, channel) -> None:
        """Route flushed frames to ``channel`` (anything with is_open/send_binary)."""
        self.channel = channel

    # --------------------------- lifecycle ---------------------------------

    def start(self) -> None:
        """
        Acquire the microphone and begin capturing. Raises PermissionDenied,
        DeviceBusy or DeviceError; on failure nothing is left held.
        """
        if self._capturing:
            return
        self._ownership.acquire(OWNER_NAME)
        try:
            self._reset_buffers()
            self._stream = self._stream_factory(self.sr, self._record_callback)
        except Exception:
            self._stream = None
            self._ownership.release(OWNER_NAME)
            raise
        self._capturing = True
        self._flush_timer.start()
        logger.info("Capture started at %d Hz", self.sr)
        self.capturing_changed.emit(True)

    def stop(self) -> None:
        """Stop the device, send any residual audio, release the microphone."""
        if not self._capturing:
            return
        self._flush_timer.stop()
        stream, self._stream = self._stream, None
        close_stream(stream)
        self._capturing = False
        try:
            self.flush()
        finally:
            self._ownership.release(OWNER_NAME)
        if self._xrun_count:
            logger.warning("Input overflows / queue drops: %d", self._xrun_count)
        logger.info("Capture stopped")
        self.capturing_changed.emit(False)

    # --------------------------- device side --------------------------------

    def _record_callback(self, indata, frames, time_info, status):
        # Minimal work in the real-time callback
        if status and getattr(status, "input_overflow", False):
            self._xrun_count += 1
        try:
            # Copy is required; PortAudio reuses the buffer
            self._rec_queue.put_nowait(indata.copy())
        except queue.Full:
            self._xrun_count += 1

    # --------------------------- Qt thread side -----------------------------

    def _reset_buffers(self) -> None:
        self._chunks = []
        self._xrun_count = 0
        self._live_ring = np.zeros(self._tail_nsamples, dtype=np.float32)
        self._live_write = 0
        while True:
            try:
                self._rec_queue.get_nowait()
            except queue.Empty:
                break

    def _drain(self) -> None:
        while True:
            try:
                block = self._rec_queue.get_nowait()
            except queue.Empty:
                return
            self._chunks.append(block)
            self._push_tail(block.reshape(-1))

    def _push_tail(self, b: np.ndarray) -> None:
        L = self._tail_nsamples
        if L <= 0:
            return
        w = self._live_write
        n = b.size
        if n >= L:
            self._live_ring[:] = b[-L:]
            self._live_write = 0
        else:
            m = min(L - w, n)
            self._live_ring[w: w + m] = b[:m]
            r = n - m
            if r:
                self._live_ring[:r] = b[m:]
            self._live_write = (w + n) % L

    def latest_samples(self) -> np.ndarray:
        """Most recent LIVE_TAIL_SECONDS of input, oldest sample first."""
        self._drain()
        w = self._live_write
        if w == 0:
            return self._live_ring.copy()
        return np.concatenate((self._live_ring[w:], self._live_ring[:w]), axis=0)

    @QtCore.pyqtSlot()
    def flush(self) -> bool:
        """
        Send everything buffered as one frame if the channel is open. The
        buffer is emptied either way; audio frames are never retried.
        """
        self._drain()
        if not self._chunks:
            return False
        blocks, self._chunks = self._chunks, []
        channel = self.channel
        if channel is None or not channel.is_open():
            logger.debug("Dropped %d audio blocks: channel not open", len(blocks))
            return False
        payload, _media_type = encode_audio(join_blocks(blocks), self.sr)
        try:
            channel.send_binary(payload)
        except ChannelError as e:
            logger.warning("Dropped audio frame of %d bytes: %s", len(payload), e)
            return False
        self.frame_sent.emit(len(payload))
        return True
