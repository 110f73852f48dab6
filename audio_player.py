from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np
import sounddevice as sd

from errors import DeviceError

logger = logging.getLogger(__name__)


class AudioPlayer:
    """
    One-shot clip player on its own output stream.

    set_data() loads mono float32 samples, play() starts from the top and
    the stream stops itself when the clip runs out. ``on_finished`` is
    called from the PortAudio thread whenever the stream ends (natural end,
    stop() or close()); callers hop it to their own thread. PortAudio
    failures surface as DeviceError.
    """

    def __init__(self, samplerate: int, on_finished: Optional[Callable[[], None]] = None):
        self.sr = samplerate
        self._clip = np.zeros(0, dtype=np.float32)
        self._pos = 0
        self._on_finished = on_finished
        try:
            self.stream = sd.OutputStream(
                samplerate=self.sr,
                channels=1,
                dtype="float32",
                blocksize=1024,
                latency="high",
                callback=self._fill,
                finished_callback=self._stream_finished,
            )
        except sd.PortAudioError as e:
            raise DeviceError("Could not open output device", {"detail": str(e)}) from e

    @property
    def remaining(self) -> int:
        return max(0, self._clip.size - self._pos)

    # PortAudio thread
    def _fill(self, outdata, frames, time_info, status):
        n = min(frames, self.remaining)
        outdata[:n, 0] = self._clip[self._pos: self._pos + n]
        outdata[n:, 0] = 0.0
        self._pos += n
        if n < frames or self.remaining == 0:
            raise sd.CallbackStop()

    def _stream_finished(self):
        if self._on_finished is not None:
            self._on_finished()

    def set_data(self, data: np.ndarray) -> None:
        self.stop()
        self._clip = np.ascontiguousarray(data, dtype=np.float32).reshape(-1)
        self._pos = 0

    def play(self) -> None:
        if self._clip.size == 0:
            return
        self.stop()
        self._pos = 0
        try:
            self.stream.start()
        except sd.PortAudioError as e:
            raise DeviceError("Could not start playback", {"detail": str(e)}) from e
        logger.debug("Playing %d samples at %d Hz", self._clip.size, self.sr)

    def stop(self) -> None:
        try:
            if self.stream.active:
                self.stream.abort()
        except sd.PortAudioError as e:
            logger.debug("Output abort failed: %s", e)

    def close(self) -> None:
        """Release the device; the player cannot be reused afterwards."""
        self.stop()
        try:
            self.stream.close()
        except sd.PortAudioError as e:
            logger.warning("Closing output stream failed: %s", e)
