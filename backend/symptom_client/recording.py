from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Literal, Protocol

from .models import AUDIO_LABEL, Modality, Upload

logger = logging.getLogger(__name__)

RecordingState = Literal["idle", "recording"]
SubmitCallback = Callable[[str, Modality, Upload], Awaitable[Any]]
AlertCallback = Callable[[str], None]

PERMISSION_ALERT = "Unable to access the microphone. Check permissions and try again."


class CaptureUnavailable(Exception):
    pass


class CaptureHandle(Protocol):
    def release(self) -> None: ...


class CaptureDevice(Protocol):
    async def acquire(self) -> CaptureHandle: ...


class RecordingSession:
    """Idle/recording state machine around one audio capture device.

    The device handle is released on every way out of ``recording``: a
    normal ``stop``, a forced ``close`` and exiting ``async with``.
    """

    def __init__(
        self,
        device: CaptureDevice,
        submit: SubmitCallback,
        *,
        alert: AlertCallback | None = None,
        file_name: str = "recording.wav",
        content_type: str = "audio/wav",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._device = device
        self._submit = submit
        self._alert = alert
        self.file_name = file_name
        self.content_type = content_type
        self._clock = clock
        self._state: RecordingState = "idle"
        self._handle: CaptureHandle | None = None
        self._chunks: list[bytes] = []
        self._started_at: float | None = None
        self._acquiring = False
        self._closed = False

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state == "recording"

    @property
    def elapsed_seconds(self) -> int:
        if self._started_at is None:
            return 0
        return int(self._clock() - self._started_at)

    async def __aenter__(self) -> "RecordingSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    async def start(self) -> bool:
        if self._closed or self._state != "idle" or self._acquiring:
            logger.debug("Ignoring start while %s", self._state)
            return False
        self._acquiring = True
        try:
            handle = await self._device.acquire()
        except (CaptureUnavailable, PermissionError, OSError) as exc:
            logger.error("Error starting recording: %s", exc)
            if self._alert is not None:
                self._alert(PERMISSION_ALERT)
            return False
        finally:
            self._acquiring = False
        if self._closed:
            # Torn down while waiting for the device.
            handle.release()
            return False
        self._handle = handle
        self._chunks = []
        self._started_at = self._clock()
        self._state = "recording"
        return True

    def add_chunk(self, data: bytes) -> None:
        if self._state != "recording" or not data:
            return
        self._chunks.append(bytes(data))

    async def stop(self) -> Upload | None:
        if self._state != "recording":
            return None
        payload = Upload(self.file_name, b"".join(self._chunks), self.content_type)
        self._reset()
        await self._submit(AUDIO_LABEL, "audio", payload)
        return payload

    def close(self) -> None:
        if self._state == "recording":
            logger.info("Discarding in-progress recording")
        self._closed = True
        self._reset()

    def _reset(self) -> None:
        handle, self._handle = self._handle, None
        self._chunks = []
        self._started_at = None
        self._state = "idle"
        if handle is not None:
            handle.release()
