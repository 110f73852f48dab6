from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np
from PyQt5 import QtCore

from audio_utils import encode_audio, join_blocks, trim_silence
from errors import DeviceBusy, DeviceError
from microphone import MICROPHONE, MicrophoneOwnership, close_stream, open_input_stream
from models import UploadKind, VerificationStatus

logger = logging.getLogger(__name__)

OWNER_NAME = "correct-sample"


@dataclass
class CorrectSampleSession:
    """One correction capture, tied to the mistake it answers."""
    mistake_id: str
    reference_text: str
    blocks: List[np.ndarray] = field(default_factory=list)


class CorrectSampleRecorder(QtCore.QObject):
    """
    Records a corrected recitation for one mistake on its own microphone
    stream and uploads it as a correct_recitation_sample. The stream is
    released on stop and on cancel, whatever happens to the upload.
    Emits:
      recording_changed(recording: bool)
      status(message: str)
      finished(ok: bool)
    """

    recording_changed = QtCore.pyqtSignal(bool)
    status = QtCore.pyqtSignal(str)
    finished = QtCore.pyqtSignal(bool)

    def __init__(
        self,
        samplerate: int,
        uploader,
        mistakes=None,
        parent=None,
        ownership: MicrophoneOwnership = MICROPHONE,
        stream_factory: Callable = open_input_stream,
    ):
        super().__init__(parent)
        self.sr = samplerate
        self._uploader = uploader
        self._mistakes = mistakes
        self._ownership = ownership
        self._stream_factory = stream_factory
        self._stream = None
        self._queue: queue.Queue[np.ndarray] = queue.Queue()
        self.session: Optional[CorrectSampleSession] = None

    @property
    def is_recording(self) -> bool:
        return self.session is not None

    def start(self, mistake_id: str, reference_text: str) -> bool:
        if self.session is not None:
            return False
        try:
            self._ownership.acquire(OWNER_NAME)
        except DeviceBusy as e:
            logger.error("Correct sample refused: %s", e)
            self.status.emit("Stop listening before recording a correct sample.")
            return False
        try:
            self._queue = queue.Queue()
            self._stream = self._stream_factory(self.sr, self._record_callback)
        except DeviceError as e:
            self._stream = None
            self._ownership.release(OWNER_NAME)
            logger.error("Error accessing microphone for correct sample: %s", e)
            self.status.emit("Could not record correct sample. Microphone access denied.")
            return False
        self.session = CorrectSampleSession(mistake_id, reference_text or "")
        self.recording_changed.emit(True)
        self.status.emit("Recording your correct recitation...")
        return True

    def _record_callback(self, indata, frames, time_info, status):
        self._queue.put_nowait(indata.copy())

    def _release(self) -> Optional[CorrectSampleSession]:
        session, self.session = self.session, None
        if session is None:
            return None
        stream, self._stream = self._stream, None
        try:
            close_stream(stream)
        finally:
            self._ownership.release(OWNER_NAME)
        while True:
            try:
                session.blocks.append(self._queue.get_nowait())
            except queue.Empty:
                break
        self.recording_changed.emit(False)
        return session

    def cancel(self) -> None:
        """Stop recording and drop the take without uploading."""
        if self._release() is not None:
            self.status.emit("Correct sample recording stopped.")

    def stop(self):
        """Stop recording and upload the take. Returns the upload worker, if any."""
        session = self._release()
        if session is None:
            return None

        raw = join_blocks(session.blocks)
        if raw.size == 0:
            self.status.emit("Nothing was recorded; correct sample not uploaded.")
            self.finished.emit(False)
            return None
        trimmed = trim_silence(raw, self.sr)
        # If trimming nuked almost everything, keep the raw take
        if trimmed.size < self.sr // 10:
            trimmed = raw
        payload, media_type = encode_audio(trimmed, self.sr)
        ext = ".flac" if media_type == "audio/flac" else ".wav"
        file_name = f"correct_recitation_{session.mistake_id}{ext}"

        self.status.emit("Uploading correct sample for training...")
        worker = self._uploader.submit(
            file_name,
            payload,
            media_type,
            UploadKind.CORRECT_SAMPLE,
            text=session.reference_text,
            original_mistake_id=session.mistake_id,
        )
        worker.completed.connect(lambda _result, s=session: self._on_uploaded(s))
        worker.failed.connect(self._on_failed)
        worker.start()
        return worker

    def _on_uploaded(self, session: CorrectSampleSession) -> None:
        if self._mistakes is not None:
            try:
                self._mistakes.verify(session.mistake_id, VerificationStatus.CORRECT)
            except KeyError:
                logger.warning("Mistake %s no longer in queue", session.mistake_id)
        self.status.emit(f'Correct sample for "{session.reference_text}" uploaded successfully!')
        self.finished.emit(True)

    def _on_failed(self, message: str) -> None:
        logger.error("Error uploading correct sample: %s", message)
        self.status.emit("Failed to upload correct sample.")
        self.finished.emit(False)
