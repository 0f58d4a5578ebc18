from __future__ import annotations

import base64
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]
Modality = Literal["text", "image", "audio"]

MODALITIES = {"text", "image", "audio"}
PENDING_TRANSCRIPTION = "pending"
AUDIO_LABEL = "Voice recording"
FALLBACK_REPLY = "Sorry, I couldn't process your request."
ERROR_REPLY = "Sorry, there was an error processing your request. Please try again."

_sequence = itertools.count(1)


def next_message_id() -> str:
    return f"{time.time_ns()}-{next(_sequence)}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_created_at(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return _utc_now()


@dataclass(frozen=True)
class Upload:
    name: str
    data: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)

    def data_uri(self) -> str:
        return f"data:{self.content_type};base64,{base64.b64encode(self.data).decode('ascii')}"


@dataclass(frozen=True)
class PendingImage:
    local_ref: str


@dataclass(frozen=True)
class ConfirmedImage:
    server_ref: str


ImageRef = Union[PendingImage, ConfirmedImage]


@dataclass(frozen=True)
class Message:
    role: Role
    modality: Modality
    content: str
    id: str = field(default_factory=next_message_id)
    transcription: str | None = None
    image: ImageRef | None = None
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def transcription_pending(self) -> bool:
        return self.transcription == PENDING_TRANSCRIPTION


def messages_from_record(record: dict[str, Any]) -> list[Message]:
    """Rebuild the user/assistant pair of a stored history record.

    Ids and timestamps come from the record so repeated selection of the same
    record yields equal sequences.
    """
    record_id = str(record.get("id") or "")
    record_type = record.get("type") or "text"
    created_at = _parse_created_at(record.get("createdAt"))

    if record_type == "image":
        image_data = record.get("imageData")
        user = Message(
            id=f"{record_id}-user",
            role="user",
            modality="image",
            content=f"Image: {record.get('imageName') or 'image'}",
            image=ConfirmedImage(image_data) if image_data else None,
            created_at=created_at,
        )
    elif record_type == "audio":
        user = Message(
            id=f"{record_id}-user",
            role="user",
            modality="audio",
            content=AUDIO_LABEL,
            transcription=record.get("audioTranscription"),
            created_at=created_at,
        )
    else:
        user = Message(
            id=f"{record_id}-user",
            role="user",
            modality="text",
            content=record.get("symptoms") or "",
            created_at=created_at,
        )

    assistant = Message(
        id=f"{record_id}-assistant",
        role="assistant",
        modality="text",
        content=record.get("answer") or FALLBACK_REPLY,
        created_at=created_at,
    )
    return [user, assistant]
