from __future__ import annotations

import json
import logging
import os
from typing import Any

import httpx

from .prompts import IMAGE_SYSTEM_PROMPT, IMAGE_USER_PROMPT, TEXT_SYSTEM_PROMPT, build_symptom_prompt

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


class OpenAIGateway:
    """AI Completion Gateway backed by the OpenAI REST API.

    Every failure mode (missing key, timeout, transport error, error status,
    unreadable or empty body) is raised as ``GatewayError``; callers decide
    how much of it to surface.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        text_model: str = "gpt-4o-mini",
        image_model: str = "gpt-4.1-mini",
        whisper_model: str = "whisper-1",
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.base_url = base_url.rstrip("/")
        self.text_model = text_model
        self.image_model = image_model
        self.whisper_model = whisper_model
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_env(cls) -> "OpenAIGateway":
        return cls(
            api_key=os.getenv("OPENAI_API_KEY") or "",
            base_url=os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1"),
            text_model=(os.getenv("SYMPTOM_CHECKER_TEXT_MODEL") or "gpt-4o-mini").strip(),
            image_model=(os.getenv("SYMPTOM_CHECKER_IMAGE_MODEL") or "gpt-4.1-mini").strip(),
            whisper_model=(os.getenv("SYMPTOM_CHECKER_WHISPER_MODEL") or "whisper-1").strip(),
            timeout_seconds=float(os.getenv("SYMPTOM_CHECKER_GATEWAY_TIMEOUT_SECONDS", "60")),
        )

    def analyze_symptoms(self, symptoms: str) -> str:
        if not symptoms or not symptoms.strip():
            raise ValueError("Symptoms required")
        payload = {
            "model": self.text_model,
            "messages": [
                {"role": "system", "content": TEXT_SYSTEM_PROMPT},
                {"role": "user", "content": build_symptom_prompt(symptoms)},
            ],
            "max_tokens": 500,
            "temperature": 0.5,
        }
        return self._chat(payload)

    def analyze_image(self, data_uri: str) -> str:
        payload = {
            "model": self.image_model,
            "messages": [
                {"role": "system", "content": IMAGE_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": IMAGE_USER_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_uri}},
                    ],
                },
            ],
            "max_tokens": 500,
            "temperature": 0.7,
        }
        return self._chat(payload)

    def transcribe_audio(self, *, file_name: str, mime_type: str, audio_bytes: bytes) -> str:
        files = {"file": (file_name or "audio.wav", audio_bytes, mime_type or "audio/wav")}
        data = {"model": self.whisper_model, "response_format": "text"}
        response = self._post("/audio/transcriptions", data=data, files=files)
        transcript = response.text.strip()
        if not transcript:
            raise GatewayError("Transcription provider returned empty text.")
        logger.info("Transcription complete: %s...", transcript[:50])
        return transcript

    def _chat(self, payload: dict[str, Any]) -> str:
        response = self._post("/chat/completions", json=payload)
        try:
            completion_payload = response.json()
        except json.JSONDecodeError as exc:
            raise GatewayError("Completion provider returned invalid JSON.") from exc
        if not isinstance(completion_payload, dict):
            raise GatewayError("Completion provider returned an unexpected body.")
        text = _coerce_completion_text(completion_payload).strip()
        if not text:
            raise GatewayError("Completion provider returned empty text.")
        return text

    def _post(self, path: str, **kwargs: Any) -> httpx.Response:
        if not self.api_key:
            raise GatewayError("OpenAI API key is not configured.")
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                transport=self._transport,
            ) as client:
                response = client.post(f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayError(f"Provider timed out on {path}.") from exc
        except httpx.HTTPError as exc:
            raise GatewayError(f"Failed to reach provider on {path}: {exc}") from exc

        if response.status_code >= 400:
            raise GatewayError(
                f"Provider call {path} failed: {_provider_error_message(response)}",
                status_code=response.status_code,
            )
        return response
