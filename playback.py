from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np
from PyQt5 import QtCore

from audio_utils import decode_audio_bytes, tone_waveform
from errors import DecodeError, DeviceError

logger = logging.getLogger(__name__)

TONE_SAMPLE_RATE = 44_100


def default_player(samplerate: int, on_finished: Optional[Callable[[], None]] = None):
    # PortAudio is only loaded once something actually plays
    try:
        from audio_player import AudioPlayer
    except OSError as e:
        raise DeviceError("Audio backend unavailable", {"detail": str(e)}) from e
    return AudioPlayer(samplerate, on_finished)


class CorrectionPlayback(QtCore.QObject):
    """
    Plays one correction clip at a time. Starting a new clip tears the
    previous one down first; natural end and stop() clear state the same way.
    Emits:
      playing_changed(playing: bool)
      failed(message: str)
    """

    playing_changed = QtCore.pyqtSignal(bool)
    failed = QtCore.pyqtSignal(str)
    # PortAudio finish callbacks arrive on the audio thread; this hops them
    # onto the Qt thread.
    _player_finished = QtCore.pyqtSignal(object)

    def __init__(self, parent=None, player_factory: Callable = default_player):
        super().__init__(parent)
        self._player_factory = player_factory
        self._player = None
        self._tone_player = None
        self._player_finished.connect(self._on_player_finished)

    @property
    def is_playing(self) -> bool:
        return self._player is not None

    # --------------------------- helpers ---------------------------------

    def _make_player(self, sr: int):
        holder: list = []
        player = self._player_factory(sr, lambda: self._player_finished.emit(holder[0]))
        holder.append(player)
        return player

    def _replace_player(self, new_player) -> None:
        """Close the current clip (if any) and install ``new_player`` in one step."""
        old, self._player = self._player, new_player
        if old is not None:
            old.close()
        if (old is None) != (new_player is None):
            self.playing_changed.emit(new_player is not None)

    def _fail(self, message: str) -> bool:
        self._replace_player(None)
        self.failed.emit(message)
        return False

    # --------------------------- playback ---------------------------------

    def play_bytes(self, payload: bytes) -> bool:
        """Decode and play an encoded clip. Returns False if nothing plays."""
        self.stop()
        try:
            samples, sr = decode_audio_bytes(payload)
        except DecodeError as e:
            logger.error("Error decoding correction audio: %s", e)
            return self._fail("Error playing correction audio.")
        return self.play_samples(samples, sr)

    def play_samples(self, samples: np.ndarray, sr: int) -> bool:
        try:
            player = self._make_player(sr)
        except DeviceError as e:
            logger.error("Error opening correction playback: %s", e)
            return self._fail("Error playing correction audio.")
        player.set_data(samples)
        self._replace_player(player)
        try:
            player.play()
        except DeviceError as e:
            logger.error("Error starting correction playback: %s", e)
            return self._fail("Error playing correction audio.")
        logger.info("Playing spoken correction (%.2fs)", len(samples) / float(sr))
        return True

    def stop(self) -> None:
        """Stop the current clip, if any. Safe to call repeatedly."""
        if self._player is not None:
            logger.info("Stopped spoken correction")
        self._replace_player(None)

    @QtCore.pyqtSlot(object)
    def _on_player_finished(self, player) -> None:
        # Finish notices from players we already replaced are stale.
        if player is not None and player is self._player:
            logger.info("Spoken correction ended naturally")
            self._replace_player(None)

    # --------------------------- tone -------------------------------------

    def play_tone(self) -> None:
        """Short 440 Hz beep on its own player; does not touch the correction slot."""
        old, self._tone_player = self._tone_player, None
        if old is not None:
            old.close()
        try:
            player = self._player_factory(TONE_SAMPLE_RATE, None)
        except DeviceError as e:
            logger.warning("Could not open feedback tone output: %s", e)
            return
        player.set_data(tone_waveform(TONE_SAMPLE_RATE))
        try:
            player.play()
        except DeviceError as e:
            player.close()
            logger.warning("Could not play feedback tone: %s", e)
            return
        self._tone_player = player

    def close(self) -> None:
        self.stop()
        if self._tone_player is not None:
            self._tone_player.close()
            self._tone_player = None
