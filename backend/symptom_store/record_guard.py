from __future__ import annotations


class RecordPolicyError(Exception):
    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class RecordGuard:
    RECORD_TYPES = {"text", "image", "audio"}
    MAX_SYMPTOMS_CHARS = 4000
    MAX_NAME_CHARS = 255

    def ensure_user_scope(self, user_id: str) -> None:
        if not user_id or len(user_id) > 128:
            raise RecordPolicyError("Invalid user scope.", field="user_id")

    def ensure_record_type(self, record_type: str) -> str:
        normalized = (record_type or "").strip().lower()
        if normalized not in self.RECORD_TYPES:
            raise RecordPolicyError(f"Unsupported record type: {record_type!r}", field="type")
        return normalized

    def normalize_symptoms(self, symptoms: str | None) -> str:
        cleaned = (symptoms or "").strip()
        if not cleaned:
            raise RecordPolicyError("Symptoms required", field="symptoms")
        if len(cleaned) > self.MAX_SYMPTOMS_CHARS:
            raise RecordPolicyError(
                f"Symptoms exceed {self.MAX_SYMPTOMS_CHARS} characters.",
                field="symptoms",
            )
        return cleaned

    def normalize_image_name(self, image_name: str | None) -> str:
        cleaned = (image_name or "").strip()
        if not cleaned:
            raise RecordPolicyError("imageName required", field="imageName")
        return cleaned[: self.MAX_NAME_CHARS]
