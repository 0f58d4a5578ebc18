from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import mimetypes
import os
import re
import sys
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from symptom_gateway import GatewayError, OpenAIGateway
from symptom_store import HistoryStore, PersistenceError, RecordPolicyError, SQLiteHistoryDB

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=os.getenv("SYMPTOM_CHECKER_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

_MAX_IMAGE_BYTES = int(os.getenv("SYMPTOM_CHECKER_MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))
_MAX_AUDIO_BYTES = int(os.getenv("SYMPTOM_CHECKER_MAX_AUDIO_BYTES", str(20 * 1024 * 1024)))
_HISTORY_HEARTBEAT_SECONDS = float(os.getenv("SYMPTOM_CHECKER_HISTORY_HEARTBEAT_SECONDS", "15"))
_ALLOWED_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp", ".heic"}
_ALLOWED_AUDIO_MIME_TYPES = {
    "audio/mpeg",
    "audio/mp3",
    "audio/mp4",
    "audio/m4a",
    "audio/x-m4a",
    "audio/wav",
    "audio/x-wav",
    "audio/webm",
    "audio/ogg",
}
_ALLOWED_AUDIO_EXTENSIONS = {".mp3", ".mp4", ".m4a", ".wav", ".webm", ".ogg", ".flac"}


class SymptomsPayload(BaseModel):
    symptoms: str | None = None


def _parse_symptoms_payload(body: Any) -> SymptomsPayload:
    # Shape errors report as the same 400 as a blank field, not FastAPI's 422.
    try:
        return SymptomsPayload.model_validate(body if body is not None else {})
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Symptoms required") from exc


class SymptomCheckerApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "SYMPTOM_CHECKER_DB_PATH",
            str(Path(__file__).resolve().parent / "symptom_checker.sqlite"),
        )
        self.db = SQLiteHistoryDB(db_path)
        self.history = HistoryStore(self.db)
        self.gateway = OpenAIGateway.from_env()


container = SymptomCheckerApp()
app = FastAPI(title="Symptom Checker Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate or not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if os.getenv("ALLOW_ANON", "false").lower() == "true":
            return "demo-user"
        raise HTTPException(status_code=401, detail="Unauthorized")
    # Opaque token; long tokens are hashed so they stay usable as a partition key.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _internal_error(where: str, exc: Exception) -> HTTPException:
    logger.error("Error in %s: %s", where, exc, exc_info=exc)
    return HTTPException(status_code=500, detail="Internal server error")


def _validation_error(exc: RecordPolicyError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def _normalize_upload_filename(upload: UploadFile | None, fallback_name: str) -> str:
    file_name = (upload.filename or "").strip() if upload else ""
    return file_name or fallback_name


def _extension_from_filename(file_name: str) -> str:
    return Path(file_name).suffix.lower().strip()


async def _read_upload_bytes(upload: UploadFile, *, max_bytes: int, too_large_detail: str) -> bytes:
    raw = await upload.read(max_bytes + 1)
    if len(raw) > max_bytes:
        raise HTTPException(status_code=413, detail=too_large_detail)
    if not raw:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    return raw


def _image_mime_type(file_name: str, mime_type: str) -> str:
    if mime_type.startswith("image/"):
        return mime_type
    ext = _extension_from_filename(file_name)
    if ext not in _ALLOWED_IMAGE_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Invalid image file")
    return mimetypes.guess_type(file_name)[0] or "image/png"


def _validate_audio_upload(file_name: str, mime_type: str) -> None:
    base_mime = mime_type.split(";", 1)[0].strip()
    ext = _extension_from_filename(file_name)
    if base_mime not in _ALLOWED_AUDIO_MIME_TYPES and ext not in _ALLOWED_AUDIO_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Unsupported audio format.")


def _analyze_symptoms_stage(symptoms: str | None) -> tuple[str, str]:
    try:
        cleaned = container.history.guard.normalize_symptoms(symptoms)
    except RecordPolicyError as exc:
        raise _validation_error(exc) from exc
    return cleaned, container.gateway.analyze_symptoms(cleaned)


def _diagnose_transcription(transcription: str) -> str | None:
    try:
        _, answer = _analyze_symptoms_stage(transcription)
    except HTTPException as exc:
        logger.warning("Transcription rejected by symptom analysis: %s", exc.detail)
        return None
    except Exception as exc:
        # Transcript is kept even when the diagnosis stage fails.
        logger.error("Symptom analysis of transcription failed: %s", exc, exc_info=exc)
        return None
    return answer


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/api/analyze-text")
def analyze_text(
    body: Any = Body(default=None),
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    payload = _parse_symptoms_payload(body)
    try:
        symptoms, answer = _analyze_symptoms_stage(payload.symptoms)
        record = container.history.add_record(
            user_id=user_id,
            record_type="text",
            symptoms=symptoms,
            answer=answer,
        )
    except (GatewayError, PersistenceError) as exc:
        raise _internal_error("analyze-text", exc) from exc
    return {"diagnosis": record["answer"]}


@app.post("/api/analyze-image")
async def analyze_image(
    image: UploadFile | None = File(default=None),
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    if image is None:
        raise HTTPException(status_code=400, detail="Image file required")
    file_name = _normalize_upload_filename(image, "image-upload")
    mime_type = _image_mime_type(file_name, (image.content_type or "").lower().strip())
    image_bytes = await _read_upload_bytes(
        image,
        max_bytes=_MAX_IMAGE_BYTES,
        too_large_detail=f"Image file exceeds {_MAX_IMAGE_BYTES // (1024 * 1024)}MB limit.",
    )
    data_uri = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"

    try:
        answer = await run_in_threadpool(container.gateway.analyze_image, data_uri)
        record = await run_in_threadpool(
            container.history.add_record,
            user_id=user_id,
            record_type="image",
            image_name=file_name,
            image_data=data_uri,
            answer=answer,
        )
    except (GatewayError, PersistenceError) as exc:
        raise _internal_error("analyze-image", exc) from exc
    return {"diagnosis": record["answer"], "imageData": record.get("imageData")}


@app.get("/api/analyze-image")
def read_image_analysis(
    imageName: str | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    if not imageName or not imageName.strip():
        raise HTTPException(status_code=400, detail="imageName query parameter required")
    try:
        record = container.history.find_latest_image(user_id, imageName)
    except RecordPolicyError as exc:
        raise _validation_error(exc) from exc
    except PersistenceError as exc:
        raise _internal_error("analyze-image read", exc) from exc
    if record is None:
        raise HTTPException(status_code=404, detail="Image analysis not found")
    return {
        "success": True,
        "imageData": record.get("imageData"),
        "diagnosis": record["answer"],
        "imageName": record["imageName"],
        "createdAt": record["createdAt"],
        "messageId": record["id"],
    }


@app.post("/api/transcribe-audio")
async def transcribe_audio(
    audio: UploadFile | None = File(default=None),
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    if audio is None:
        raise HTTPException(status_code=400, detail="Audio file required")
    file_name = _normalize_upload_filename(audio, "audio.wav")
    mime_type = (audio.content_type or "").lower().strip() or "audio/wav"
    _validate_audio_upload(file_name, mime_type)
    audio_bytes = await _read_upload_bytes(
        audio,
        max_bytes=_MAX_AUDIO_BYTES,
        too_large_detail=f"Audio file exceeds {_MAX_AUDIO_BYTES // (1024 * 1024)}MB limit.",
    )
    logger.info("Audio file received: %s size: %d", file_name, len(audio_bytes))

    try:
        transcription = await run_in_threadpool(
            container.gateway.transcribe_audio,
            file_name=file_name,
            mime_type=mime_type,
            audio_bytes=audio_bytes,
        )
    except GatewayError as exc:
        logger.error("Transcription failed: %s", exc)
        raise HTTPException(status_code=500, detail="Could not transcribe audio") from exc

    diagnosis = await run_in_threadpool(_diagnose_transcription, transcription)
    try:
        record = await run_in_threadpool(
            container.history.add_record,
            user_id=user_id,
            record_type="audio",
            audio_transcription=transcription,
            answer=diagnosis or "",
        )
    except PersistenceError as exc:
        raise _internal_error("transcribe-audio", exc) from exc
    return {"transcription": record["audioTranscription"], "diagnosis": diagnosis}


@app.get("/api/history")
def list_history(
    limit: int | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        items = container.history.list_records(user_id, limit)
    except PersistenceError as exc:
        raise _internal_error("history list", exc) from exc
    return {"items": items}


@app.patch("/api/history/{record_id}")
def edit_history(
    record_id: str,
    body: Any = Body(default=None),
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    payload = _parse_symptoms_payload(body)
    try:
        record = container.history.update_symptoms(user_id, record_id, payload.symptoms or "")
    except RecordPolicyError as exc:
        raise _validation_error(exc) from exc
    except PersistenceError as exc:
        raise _internal_error("history edit", exc) from exc
    if record is None:
        raise HTTPException(status_code=404, detail="Text history record not found")
    return record


@app.delete("/api/history/{record_id}")
def delete_history(
    record_id: str,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        deleted = container.history.delete_record(user_id, record_id)
    except PersistenceError as exc:
        raise _internal_error("history delete", exc) from exc
    return {"deleted": deleted}


async def _history_events(
    user_id: str,
    request: Request | None = None,
    *,
    heartbeat_seconds: float = _HISTORY_HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[list[dict[str, Any]]] = asyncio.Queue()

    def on_snapshot(snapshot: list[dict[str, Any]]) -> None:
        # Writes commit on threadpool workers; hop back onto this stream's loop.
        loop.call_soon_threadsafe(queue.put_nowait, snapshot)

    unsubscribe = container.history.subscribe(user_id, on_snapshot)
    try:
        while True:
            if request is not None and await request.is_disconnected():
                break
            try:
                snapshot = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield _emit_sse("snapshot", {"items": snapshot})
    finally:
        unsubscribe()


@app.get("/api/history/stream")
def stream_history(
    request: Request,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return StreamingResponse(_history_events(user_id, request), media_type="text/event-stream")
