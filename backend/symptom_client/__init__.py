from .history_view import HistoryFeed, HistoryView, HistoryViewError
from .models import (
    ERROR_REPLY,
    FALLBACK_REPLY,
    PENDING_TRANSCRIPTION,
    ConfirmedImage,
    Message,
    PendingImage,
    Upload,
    messages_from_record,
)
from .recording import CaptureDevice, CaptureHandle, CaptureUnavailable, RecordingSession
from .session import ChatSession, SymptomHandlers
from .transport import HandlerClient, HandlerError

__all__ = [
    "ERROR_REPLY",
    "FALLBACK_REPLY",
    "PENDING_TRANSCRIPTION",
    "CaptureDevice",
    "CaptureHandle",
    "CaptureUnavailable",
    "ChatSession",
    "ConfirmedImage",
    "HandlerClient",
    "HandlerError",
    "HistoryFeed",
    "HistoryView",
    "HistoryViewError",
    "Message",
    "PendingImage",
    "RecordingSession",
    "SymptomHandlers",
    "Upload",
    "messages_from_record",
]
