from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, Protocol

from .models import (
    AUDIO_LABEL,
    ERROR_REPLY,
    FALLBACK_REPLY,
    MODALITIES,
    PENDING_TRANSCRIPTION,
    ConfirmedImage,
    Message,
    Modality,
    PendingImage,
    Upload,
    messages_from_record,
)
from .transport import HandlerError

logger = logging.getLogger(__name__)


class SymptomHandlers(Protocol):
    async def analyze_text(self, symptoms: str) -> dict[str, Any]: ...

    async def analyze_image(self, upload: Upload) -> dict[str, Any]: ...

    async def transcribe_audio(self, upload: Upload) -> dict[str, Any]: ...


def _reply_text(data: dict[str, Any]) -> str:
    diagnosis = data.get("diagnosis")
    if isinstance(diagnosis, str) and diagnosis.strip():
        return diagnosis
    return FALLBACK_REPLY


class ChatSession:
    """Ordered message sequence for one view plus the single in-flight gate.

    ``submit`` never raises for handler failures: every settled call appends
    exactly one assistant message after the user message it answers. Loading
    a history record bumps the epoch, so a call that settles afterwards is
    dropped instead of appending to the newly loaded sequence.
    """

    def __init__(self, handlers: SymptomHandlers, *, request_timeout: float | None = None) -> None:
        self._handlers = handlers
        self.request_timeout = request_timeout
        self._messages: list[Message] = []
        self._busy = False
        self._epoch = 0

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def busy(self) -> bool:
        return self._busy

    async def send_text(self, text: str) -> bool:
        return await self.submit(text, "text")

    async def send_image(self, upload: Upload) -> bool:
        return await self.submit(f"Image: {upload.name}", "image", upload)

    async def send_audio(self, upload: Upload) -> bool:
        return await self.submit(AUDIO_LABEL, "audio", upload)

    async def submit(self, content: str, modality: Modality, file: Upload | None = None) -> bool:
        if modality not in MODALITIES:
            raise ValueError(f"Unsupported modality: {modality!r}")
        if self._busy:
            logger.info("Ignoring %s submission while another request is in flight", modality)
            return False
        if modality == "text":
            content = (content or "").strip()
            if not content:
                return False
        elif file is None:
            logger.warning("Ignoring %s submission without a file", modality)
            return False

        self._busy = True
        epoch = self._epoch
        try:
            user_message = self._optimistic_message(content, modality, file)
            self._messages.append(user_message)
            try:
                data = await self._dispatch(content, modality, file)
            except asyncio.CancelledError:
                self._settle(epoch, None, ERROR_REPLY)
                raise
            except Exception as exc:
                logger.error("Error sending %s message: %s", modality, exc)
                self._settle(epoch, None, ERROR_REPLY)
                return True
            self._settle(epoch, self._reconcile(user_message, data), _reply_text(data))
            return True
        finally:
            self._busy = False

    def load_history(self, record: dict[str, Any]) -> None:
        self._epoch += 1
        self._messages = messages_from_record(record)

    def clear(self) -> None:
        self._epoch += 1
        self._messages = []

    def _optimistic_message(self, content: str, modality: Modality, file: Upload | None) -> Message:
        if modality == "image" and file is not None:
            return Message(
                role="user",
                modality="image",
                content=content,
                image=PendingImage(local_ref=file.data_uri()),
            )
        if modality == "audio":
            return Message(
                role="user",
                modality="audio",
                content=content,
                transcription=PENDING_TRANSCRIPTION,
            )
        return Message(role="user", modality="text", content=content)

    async def _dispatch(self, content: str, modality: Modality, file: Upload | None) -> dict[str, Any]:
        call: Awaitable[dict[str, Any]]
        if modality == "text":
            call = self._handlers.analyze_text(content)
        elif modality == "image":
            call = self._handlers.analyze_image(file)
        else:
            call = self._handlers.transcribe_audio(file)

        if self.request_timeout is not None:
            data = await asyncio.wait_for(call, timeout=self.request_timeout)
        else:
            data = await call
        if not isinstance(data, dict):
            raise HandlerError(f"Malformed {modality} response: {type(data).__name__}")
        return data

    def _reconcile(self, message: Message, data: dict[str, Any]) -> Message:
        if message.modality == "image":
            server_ref = data.get("imageData")
            if isinstance(server_ref, str) and server_ref:
                return dataclasses.replace(message, image=ConfirmedImage(server_ref))
        elif message.modality == "audio":
            transcription = data.get("transcription")
            return dataclasses.replace(
                message,
                transcription=transcription if isinstance(transcription, str) and transcription else None,
            )
        return message

    def _settle(self, epoch: int, user_message: Message | None, reply: str) -> None:
        if epoch != self._epoch:
            logger.info("Dropping completion for a replaced message sequence")
            return
        if user_message is not None:
            self._messages = [user_message if m.id == user_message.id else m for m in self._messages]
        self._messages.append(Message(role="assistant", modality="text", content=reply))
