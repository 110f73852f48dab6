"""
Microphone ownership and input stream opening.

The main capture pipeline and the correct-sample recorder never share the
microphone: whoever wants it must ``acquire`` the process-wide
``MicrophoneOwnership`` first, and acquiring it while someone else holds it
is an error rather than a silent takeover.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from errors import DeviceBusy, DeviceError, PermissionDenied

logger = logging.getLogger(__name__)

# PortAudio host errors that mean the OS refused access rather than that the
# device is missing or broken.
_PERMISSION_HINTS = ("permission", "denied", "not authorized", "unauthorized")


class MicrophoneOwnership:
    """Process-scoped record of which recorder currently owns the microphone."""

    def __init__(self) -> None:
        self._owner: Optional[str] = None

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def acquire(self, name: str) -> None:
        if self._owner is not None and self._owner != name:
            raise DeviceBusy(self._owner, name)
        self._owner = name

    def release(self, name: str) -> None:
        if self._owner == name:
            self._owner = None


MICROPHONE = MicrophoneOwnership()


def open_input_stream(
    samplerate: int,
    callback: Callable,
    blocksize: int = 2048,
):
    """
    Open and start a mono float32 input stream. Raises PermissionDenied or
    DeviceError when PortAudio cannot give us the device.
    """
    try:
        import sounddevice as sd
    except OSError as e:
        # sounddevice raises OSError when the PortAudio library is missing
        raise DeviceError("Audio backend unavailable", {"detail": str(e)}) from e

    try:
        stream = sd.InputStream(
            samplerate=samplerate,
            channels=1,
            dtype="float32",
            blocksize=blocksize,
            latency="high",
            callback=callback,
        )
    except sd.PortAudioError as e:
        raise _map_portaudio_error(e) from e
    try:
        stream.start()
    except sd.PortAudioError as e:
        stream.close()
        raise _map_portaudio_error(e) from e
    return stream


def close_stream(stream) -> None:
    """Stop and close a stream; device errors are logged, never raised."""
    if stream is None:
        return
    try:
        stream.stop()
    except Exception as e:
        logger.warning("Input stream stop failed: %s", e)
    try:
        stream.close()
    except Exception as e:
        logger.warning("Input stream close failed: %s", e)


def _map_portaudio_error(e: Exception) -> DeviceError:
    text = str(e)
    if any(hint in text.lower() for hint in _PERMISSION_HINTS):
        return PermissionDenied("Microphone access denied", {"detail": text})
    return DeviceError("Could not open microphone", {"detail": text})
