"""
Session protocol state machine.

``RecitationSession`` owns one listening attempt: it starts the capture
pipeline, opens the session socket, turns inbound events into verse and
highlight state, records mistakes, and triggers feedback. Everything it
exposes is observable through Qt signals; nothing here renders anything.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Callable, Dict, List, Optional

from PyQt5 import QtCore

from app_settings import default_settings
from capture import AudioCapturePipeline
from channel import SessionChannel
from errors import ChannelError, DecodeError, DeviceBusy, DeviceError, MalformedEvent
from models import (
    DiffEvent,
    FeedbackMode,
    MistakeRecord,
    SessionState,
    VerseContext,
    highlighted_indices,
)
from playback import CorrectionPlayback
from voice_activity import VoiceActivityMonitor

logger = logging.getLogger(__name__)

# States from which start_listening() may begin a new attempt.
_STARTABLE = (SessionState.IDLE, SessionState.CLOSED, SessionState.ERROR)


class RecitationSession(QtCore.QObject):
    """
    Emits:
      state_changed(state: str)
      verse_changed(verse: object)          # VerseContext or None
      highlights_changed(indices: list)
      status_changed(message: str)
      feedback_mode_changed(mode: str)
      mistake_detected(record: object)      # MistakeRecord
    """

    state_changed = QtCore.pyqtSignal(str)
    verse_changed = QtCore.pyqtSignal(object)
    highlights_changed = QtCore.pyqtSignal(list)
    status_changed = QtCore.pyqtSignal(str)
    feedback_mode_changed = QtCore.pyqtSignal(str)
    mistake_detected = QtCore.pyqtSignal(object)

    def __init__(
        self,
        mistakes,
        settings: Optional[Dict] = None,
        parent=None,
        capture: Optional[AudioCapturePipeline] = None,
        playback: Optional[CorrectionPlayback] = None,
        channel_factory: Callable = SessionChannel,
    ):
        super().__init__(parent)
        self.settings = settings or default_settings()
        self.mistakes = mistakes
        self.capture = capture or AudioCapturePipeline(int(self.settings["sample_rate"]), self)
        self.playback = playback or CorrectionPlayback(self)
        self.vad = VoiceActivityMonitor(self.capture, self.playback, self)
        self._channel_factory = channel_factory
        self._channel = None

        self.state = SessionState.IDLE
        self.verse: Optional[VerseContext] = None
        self.highlights: List[int] = []
        self.feedback_mode = FeedbackMode(self.settings.get("feedback_mode", "highlight"))
        self.status_message = "Ready to start listening."

        self.playback.failed.connect(self._set_status)

        self._handlers = {
            "verse_identified": self._on_verse_identified,
            "diff_update": self._on_diff_update,
            "mistake_event": self._on_mistake_event,
        }

    # --------------------------- observable state --------------------------

    @property
    def channel(self):
        return self._channel

    @property
    def is_listening(self) -> bool:
        return self.state in (SessionState.CONNECTING, SessionState.ACTIVE)

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.debug("Session %s -> %s", self.state.value, state.value)
        self.state = state
        self.state_changed.emit(state.value)

    @QtCore.pyqtSlot(str)
    def _set_status(self, message: str) -> None:
        self.status_message = message
        self.status_changed.emit(message)

    def _set_verse(self, verse: Optional[VerseContext]) -> None:
        self.verse = verse
        self.verse_changed.emit(verse)

    def _set_highlights(self, indices: List[int]) -> None:
        self.highlights = list(indices)
        self.highlights_changed.emit(list(self.highlights))

    # --------------------------- lifecycle ---------------------------------

    def start_listening(self) -> bool:
        """Acquire the microphone and connect. Returns False if nothing started."""
        if self.state not in _STARTABLE:
            return False
        try:
            self.capture.start()
        except DeviceBusy as e:
            logger.error("Microphone busy: %s", e)
            self._set_state(SessionState.IDLE)
            self._set_status("Microphone is busy. Finish the correct sample recording first.")
            return False
        except DeviceError as e:
            # PermissionDenied included
            logger.error("Error accessing microphone: %s", e)
            self._set_state(SessionState.IDLE)
            self._set_status("Microphone access denied or error. Please allow microphone permissions.")
            return False

        channel = self._channel_factory(self.settings["ws_url"], self)
        self._replace_channel(channel)
        self._set_verse(None)
        self._set_highlights([])
        self._set_state(SessionState.CONNECTING)
        self._set_status("Listening...")
        channel.open()
        return True

    def stop_listening(self) -> None:
        """Release everything the attempt holds. Idempotent."""
        if self.state is SessionState.IDLE and self._channel is None and not self.capture.is_capturing:
            return
        self._teardown()
        self._set_state(SessionState.IDLE)
        self._set_status("Stopped listening.")

    def close(self) -> None:
        self.stop_listening()
        self.playback.close()

    def _replace_channel(self, new_channel) -> None:
        """Install ``new_channel`` (or None), closing whatever was there first."""
        old, self._channel = self._channel, new_channel
        self.capture.attach(new_channel)
        if old is not None:
            old.close()
            old.deleteLater()
        if new_channel is not None:
            ch = new_channel
            ch.opened.connect(lambda: self._on_opened(ch))
            ch.message_received.connect(lambda text: self._on_message(ch, text))
            ch.closed.connect(lambda: self._on_closed(ch))
            ch.failed.connect(lambda message: self._on_failed(ch, message))

    def _teardown(self) -> None:
        # Capture first so residual audio still goes out on the open socket.
        self.capture.stop()
        self.vad.stop()
        self.playback.stop()
        self._replace_channel(None)
        self._set_verse(None)
        self._set_highlights([])

    # --------------------------- channel events ----------------------------

    def _on_opened(self, channel) -> None:
        if channel is not self._channel or self.state is not SessionState.CONNECTING:
            return
        self._send_config()
        self._set_state(SessionState.ACTIVE)
        self.vad.start()
        self._set_status("Connected to server. Start reciting!")

    def _on_closed(self, channel) -> None:
        if channel is not self._channel:
            return
        logger.info("Session socket closed")
        self._set_state(SessionState.CLOSED)
        self._teardown()
        self._set_status("Disconnected from server.")

    def _on_failed(self, channel, message: str) -> None:
        if channel is not self._channel:
            return
        logger.error("Session socket error: %s", message)
        self._set_state(SessionState.ERROR)
        self._teardown()
        self._set_status("WebSocket error. Check server connection.")

    def _on_message(self, channel, text: str) -> None:
        if channel is not self._channel or self.state is not SessionState.ACTIVE:
            return
        try:
            self.handle_message(text)
        except MalformedEvent as e:
            logger.warning("Ignoring malformed event: %s", e)

    # --------------------------- protocol ----------------------------------

    def handle_message(self, text: str) -> None:
        """Apply one inbound text frame. Raises MalformedEvent if unusable."""
        try:
            message = json.loads(text)
        except ValueError as e:
            raise MalformedEvent("Event is not valid JSON", text) from e
        if not isinstance(message, dict):
            raise MalformedEvent("Event is not a JSON object", message)
        event_type = message.get("type")
        handler = self._handlers.get(event_type) if isinstance(event_type, str) else None
        if handler is None:
            raise MalformedEvent("Unknown event type", event_type)
        logger.debug("Received message: %s", event_type)
        handler(message)

    def _on_verse_identified(self, message: dict) -> None:
        sura_name = message.get("sura_name")
        ayah_text = message.get("ayah_text")
        if not isinstance(sura_name, str) or not isinstance(ayah_text, str):
            raise MalformedEvent("verse_identified without sura_name/ayah_text", message)
        ayah_number = message.get("ayah_number")
        self._set_verse(VerseContext.from_text(sura_name, ayah_number, ayah_text))
        self._set_highlights([])
        self._set_status(f"Reciting: {sura_name} - {ayah_number}")

    def _on_diff_update(self, message: dict) -> None:
        diff = message.get("diff")
        if not isinstance(diff, list):
            raise MalformedEvent("diff_update without a diff list", message)
        try:
            events = [DiffEvent.from_dict(d) for d in diff]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MalformedEvent("diff_update with an unreadable entry", diff) from e
        self._set_highlights(highlighted_indices(events))

    def _on_mistake_event(self, message: dict) -> None:
        mistake_type = message.get("mistake_type")
        if not isinstance(mistake_type, str):
            raise MalformedEvent("mistake_event without mistake_type", message)
        reference_word = str(message.get("reference_word") or "")
        transcribed_word = str(message.get("transcribed_word") or "")
        self._set_status(
            f'Mistake detected! {mistake_type} at word: "{reference_word}" '
            f'(You said: "{transcribed_word}")'
        )
        verse = self.verse
        record = MistakeRecord(
            sura=verse.sura_name if verse else "",
            aya=verse.ayah_text if verse else "",
            transcription_segment=str(message.get("transcribed_segment") or ""),
            reference_segment=str(message.get("reference_segment") or ""),
            mistake_type=mistake_type,
            reference_word=reference_word,
            transcribed_word=transcribed_word,
        )
        self.mistakes.add(record)
        self.mistake_detected.emit(record)
        self._give_feedback(message.get("correction_audio_base64"))

    def _give_feedback(self, audio_b64) -> None:
        mode = self.feedback_mode
        if mode is FeedbackMode.HIGHLIGHT:
            # already visible through diff_update
            return
        if mode is FeedbackMode.BEEP:
            self.playback.play_tone()
            return
        if not audio_b64:
            return
        try:
            payload = _decode_base64(audio_b64)
        except DecodeError as e:
            logger.error("Error decoding correction audio: %s", e)
            self.playback.stop()
            self._set_status("Error playing correction audio.")
            return
        self.playback.play_bytes(payload)

    # --------------------------- configuration -----------------------------

    def set_feedback_mode(self, mode) -> None:
        """Change the feedback mode; sent to the server only if connected now."""
        self.feedback_mode = FeedbackMode(mode)
        self.feedback_mode_changed.emit(self.feedback_mode.value)
        channel = self._channel
        if channel is not None and channel.is_open():
            self._send_config()

    def _send_config(self) -> None:
        channel = self._channel
        if channel is None:
            return
        try:
            channel.send_json({"type": "config", "feedbackMode": self.feedback_mode.value})
        except ChannelError as e:
            logger.warning("Could not send config: %s", e)


def _decode_base64(data) -> bytes:
    if not isinstance(data, str):
        raise DecodeError("Correction audio is not a base64 string")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError("Correction audio is not valid base64", {"error": str(e)}) from e
