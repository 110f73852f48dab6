from __future__ import annotations

import logging

from PyQt5 import QtCore

from audio_utils import spectrum_level

logger = logging.getLogger(__name__)

# One poll per display refresh at 60 Hz.
FRAME_INTERVAL_MS = 16
# Mean spectrum level (0..255 scale) above which the reciter counts as speaking.
VOICE_ACTIVITY_THRESHOLD = 10.0


class VoiceActivityMonitor(QtCore.QObject):
    """
    Best-effort barge-in: while capture runs, checks the input spectrum every
    frame and stops correction playback as soon as the reciter speaks again.
    Ambient noise can trigger it and quiet speech can slip under it.
    Emits:
      level_changed(level: float)
      interrupted()
    """

    level_changed = QtCore.pyqtSignal(float)
    interrupted = QtCore.pyqtSignal()

    def __init__(self, source, playback, parent=None):
        super().__init__(parent)
        self._source = source
        self._playback = playback
        self.last_level = 0.0
        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(FRAME_INTERVAL_MS)
        self._timer.timeout.connect(self.poll)

    @property
    def is_running(self) -> bool:
        return self._timer.isActive()

    def start(self) -> None:
        if not self._timer.isActive():
            self._timer.start()

    def stop(self) -> None:
        self._timer.stop()

    @QtCore.pyqtSlot()
    def poll(self) -> None:
        if not self._source.is_capturing:
            return
        level = spectrum_level(self._source.latest_samples())
        self.last_level = level
        self.level_changed.emit(level)
        if level > VOICE_ACTIVITY_THRESHOLD and self._playback.is_playing:
            logger.info("User started speaking (level %.1f), stopping correction", level)
            self._playback.stop()
            self.interrupted.emit()
