from __future__ import annotations

import httpx
from fakes import FLU_DIAGNOSIS, HEADACHE_TRANSCRIPT

from symptom_gateway import OpenAIGateway
from symptom_store import PersistenceError


def _post_audio(client, headers, *, name="recording.wav", data=b"wav-bytes", content_type="audio/wav"):
    return client.post(
        "/api/transcribe-audio",
        headers=headers,
        files={"audio": (name, data, content_type)},
    )


def test_transcribe_audio_chains_into_symptom_analysis(client, auth_headers, backend_module, fake_gateway):
    response = _post_audio(client, auth_headers("user-a"))
    assert response.status_code == 200
    assert response.json() == {"transcription": HEADACHE_TRANSCRIPT, "diagnosis": FLU_DIAGNOSIS}
    assert fake_gateway.calls == [
        ("audio", ("recording.wav", "audio/wav", len(b"wav-bytes"))),
        ("text", HEADACHE_TRANSCRIPT),
    ]

    records = backend_module.container.history.list_records("user-a")
    assert len(records) == 1
    assert records[0]["type"] == "audio"
    assert records[0]["audioTranscription"] == HEADACHE_TRANSCRIPT
    assert records[0]["answer"] == FLU_DIAGNOSIS


def test_transcribe_audio_keeps_transcript_when_diagnosis_fails(client, auth_headers, backend_module, fake_gateway):
    fake_gateway.fail_text = True

    response = _post_audio(client, auth_headers("user-a"), name="clip.m4a", content_type="audio/m4a")
    assert response.status_code == 200
    assert response.json() == {"transcription": HEADACHE_TRANSCRIPT, "diagnosis": None}

    records = backend_module.container.history.list_records("user-a")
    assert [record["type"] for record in records] == ["audio"]
    assert records[0]["audioTranscription"] == HEADACHE_TRANSCRIPT
    assert records[0]["answer"] == ""


def test_transcribe_audio_failure_returns_500_and_persists_nothing(client, auth_headers, backend_module, fake_gateway):
    fake_gateway.fail_transcription = True

    response = _post_audio(client, auth_headers("user-a"))
    assert response.status_code == 500
    assert response.json()["detail"] == "Could not transcribe audio"
    assert "upstream secret" not in response.text
    assert [call[0] for call in fake_gateway.calls] == ["audio"]
    assert backend_module.container.history.list_records("user-a") == []


def test_transcribe_audio_requires_file(client, auth_headers, fake_gateway):
    response = client.post(
        "/api/transcribe-audio",
        headers=auth_headers("user-a"),
        files={"voice": ("recording.wav", b"wav-bytes", "audio/wav")},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Audio file required"
    assert fake_gateway.calls == []


def test_transcribe_audio_rejects_unsupported_format(client, auth_headers, fake_gateway):
    response = _post_audio(client, auth_headers("user-a"), name="not-audio.txt", data=b"hello", content_type="text/plain")
    assert response.status_code == 400
    assert "unsupported audio format" in response.json()["detail"].lower()
    assert fake_gateway.calls == []


def test_transcribe_audio_accepts_codec_suffixed_mime(client, auth_headers, fake_gateway):
    response = _post_audio(client, auth_headers("user-a"), name="blob", content_type="audio/webm;codecs=opus")
    assert response.status_code == 200
    assert fake_gateway.calls[0] == ("audio", ("blob", "audio/webm;codecs=opus", len(b"wav-bytes")))


def test_transcribe_audio_rejects_empty_upload(client, auth_headers, fake_gateway):
    response = _post_audio(client, auth_headers("user-a"), data=b"")
    assert response.status_code == 400
    assert response.json()["detail"] == "Uploaded file is empty."
    assert fake_gateway.calls == []


def test_transcribe_audio_requires_authentication(client, fake_gateway):
    response = _post_audio(client, {})
    assert response.status_code == 401
    assert fake_gateway.calls == []


def test_transcribe_audio_degrades_on_malformed_completion(client, auth_headers, backend_module, monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/audio/transcriptions"):
            return httpx.Response(200, text=HEADACHE_TRANSCRIPT)
        return httpx.Response(200, json={"choices": [{"message": "oops"}]})

    gateway = OpenAIGateway(api_key="sk-test", transport=httpx.MockTransport(handler))
    monkeypatch.setattr(backend_module.container, "gateway", gateway)

    response = _post_audio(client, auth_headers("user-a"), name="a.wav")
    assert response.status_code == 200
    assert response.json() == {"transcription": HEADACHE_TRANSCRIPT, "diagnosis": None}
    records = backend_module.container.history.list_records("user-a")
    assert [(record["type"], record["answer"]) for record in records] == [("audio", "")]


def test_transcribe_audio_persistence_failure_returns_500(client, auth_headers, backend_module, fake_gateway, monkeypatch):
    def broken_add_record(**kwargs):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(backend_module.container.history, "add_record", broken_add_record)

    response = _post_audio(client, auth_headers("user-a"))
    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error"}
    assert "database is locked" not in response.text
    assert "transcription" not in response.json()
