"""
Data model for the live recitation client.

Verse context and diff entries are transient views of server events;
mistake records and training upload records are durable and serialized as
plain JSON dictionaries.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional


class SessionState(str, Enum):
    """Lifecycle of one listening attempt."""
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"
    ERROR = "error"


class FeedbackMode(str, Enum):
    """How a detected mistake is signalled to the reciter."""
    HIGHLIGHT = "highlight"
    BEEP = "beep"
    SPOKEN = "spoken"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    CORRECT = "correct"
    INCORRECT = "incorrect"


class UploadKind(str, Enum):
    INITIAL_RECITATION = "initial_recitation_upload"
    CORRECT_SAMPLE = "correct_recitation_sample"


class DiffType(str, Enum):
    EQUAL = "equal"
    INSERTION = "insertion"
    DELETION = "deletion"
    REPLACEMENT_REF = "replacement_ref"
    REPLACEMENT_TRANS = "replacement_trans"


# Reference-side discrepancies; these are the words shown as wrong.
HIGHLIGHT_TYPES = frozenset({DiffType.DELETION, DiffType.REPLACEMENT_REF})


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def split_words(text: str) -> List[str]:
    return [w for w in text.split() if w]


@dataclass(frozen=True)
class VerseContext:
    """The verse currently being recited, split into word tokens."""
    sura_name: str
    ayah_number: Any
    ayah_text: str
    words: tuple = ()

    @classmethod
    def from_text(cls, sura_name: str, ayah_number: Any, ayah_text: str) -> "VerseContext":
        return cls(sura_name, ayah_number, ayah_text, tuple(split_words(ayah_text)))


@dataclass(frozen=True)
class DiffEvent:
    type: DiffType
    index: int
    word: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "DiffEvent":
        return cls(DiffType(data["type"]), int(data["index"]), str(data.get("word", "")))


def highlighted_indices(diff: Iterable[DiffEvent]) -> List[int]:
    """Indices of reference words that were deleted or replaced, in event order."""
    return [d.index for d in diff if d.type in HIGHLIGHT_TYPES]


@dataclass
class MistakeRecord:
    """
    One detected discrepancy. ``synced`` tells whether the server has
    acknowledged the current state of the record.
    """
    sura: str
    aya: str
    transcription_segment: str
    reference_segment: str
    mistake_type: str
    reference_word: str = ""
    transcribed_word: str = ""
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)
    verified: VerificationStatus = VerificationStatus.PENDING
    synced: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["verified"] = self.verified.value
        return data

    def to_payload(self) -> dict:
        """Wire form for the sync endpoint: everything except the sync flag."""
        data = self.to_dict()
        data.pop("synced", None)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "MistakeRecord":
        return cls(
            id=str(data["id"]),
            sura=str(data.get("sura") or ""),
            aya=str(data.get("aya") or ""),
            transcription_segment=str(data.get("transcription_segment") or ""),
            reference_segment=str(data.get("reference_segment") or ""),
            mistake_type=str(data.get("mistake_type") or ""),
            reference_word=str(data.get("reference_word") or ""),
            transcribed_word=str(data.get("transcribed_word") or ""),
            timestamp=int(data.get("timestamp") or 0),
            verified=VerificationStatus(data.get("verified", "pending")),
            synced=bool(data.get("synced", False)),
        )


@dataclass(frozen=True)
class TrainingUploadRecord:
    file_name: str
    type: UploadKind
    file_size: int
    file_type: str
    text: Optional[str] = None
    original_mistake_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TrainingUploadRecord":
        return cls(
            id=str(data["id"]),
            file_name=str(data.get("file_name", "")),
            type=UploadKind(data["type"]),
            file_size=int(data.get("file_size") or 0),
            file_type=str(data.get("file_type", "")),
            text=data.get("text"),
            original_mistake_id=data.get("original_mistake_id"),
            timestamp=int(data.get("timestamp") or 0),
        )
