"""
Tests for the OpenAI backend and the media job worker.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import APIError

from chatrelay.ai.backend import OpenAIBackend
from chatrelay.domain.chat_config import ChatConfig
from chatrelay.domain.errors import AIBackendError, CircuitOpenError, SafetyBlocked
from chatrelay.usecases.media_jobs import MediaJobWorker, PROCESS_IMAGE, PROCESS_VIDEO

from conftest import make_media


def _completion(content="Olá!", finish_reason="stop"):
    return SimpleNamespace(choices=[
        SimpleNamespace(finish_reason=finish_reason, message=SimpleNamespace(content=content))
    ])


@pytest.fixture
def client():
    mock = MagicMock()
    mock.chat.completions.create = AsyncMock(return_value=_completion())
    mock.audio.transcriptions.create = AsyncMock(return_value="olá mundo")
    return mock


@pytest.fixture
def backend(client):
    return OpenAIBackend(client=client, model="gpt-test", transcription_model="whisper-test")


class TestOpenAIBackend:
    """Tests for OpenAIBackend."""

    @pytest.mark.asyncio
    async def test_process_text(self, backend, client):
        """The context follows the system instruction and chat settings are applied."""
        config = ChatConfig(temperature=0.3, max_output_tokens=256, system_instructions="Seja breve")

        response = await backend.process_text([{"role": "user", "content": "Oi"}], config)

        assert response == "Olá!"
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 256
        assert kwargs["messages"][0] == {"role": "system", "content": "Seja breve"}
        assert kwargs["messages"][1] == {"role": "user", "content": "Oi"}

    @pytest.mark.asyncio
    async def test_content_filter_is_safety_block(self, backend, client):
        """A content_filter finish reason raises SafetyBlocked."""
        client.chat.completions.create.return_value = _completion(content=None, finish_reason="content_filter")

        with pytest.raises(SafetyBlocked):
            await backend.process_text([{"role": "user", "content": "Oi"}], ChatConfig())

    @pytest.mark.asyncio
    async def test_api_error_with_safety_marker(self, backend, client):
        """API errors mentioning the content policy become SafetyBlocked."""
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client.chat.completions.create.side_effect = APIError(
            "Your request was rejected by our content_policy", request, body=None
        )

        with pytest.raises(SafetyBlocked):
            await backend.process_text([{"role": "user", "content": "Oi"}], ChatConfig())

    @pytest.mark.asyncio
    async def test_api_error(self, backend, client):
        """Other API errors become AIBackendError."""
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client.chat.completions.create.side_effect = APIError("server exploded", request, body=None)

        with pytest.raises(AIBackendError) as exc_info:
            await backend.process_text([{"role": "user", "content": "Oi"}], ChatConfig())

        assert not isinstance(exc_info.value, SafetyBlocked)

    @pytest.mark.asyncio
    async def test_empty_response(self, backend, client):
        """An empty answer is a backend error."""
        client.chat.completions.create.return_value = _completion(content="  ")

        with pytest.raises(AIBackendError):
            await backend.process_text([{"role": "user", "content": "Oi"}], ChatConfig())

    @pytest.mark.asyncio
    async def test_process_image_sends_data_url(self, backend, client):
        """Images are sent inline as a base64 data URL."""
        await backend.process_image(make_media("image/png"), "Descreva", ChatConfig())

        content = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert content[0] == {"type": "text", "text": "Descreva"}
        assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")

    @pytest.mark.asyncio
    async def test_process_audio_transcribes(self, backend, client):
        """Audio is transcribed with the configured model and a named buffer."""
        result = await backend.process_audio(make_media("audio/ogg"), "abc123", ChatConfig())

        assert result == "olá mundo"
        kwargs = client.audio.transcriptions.create.await_args.kwargs
        assert kwargs["model"] == "whisper-test"
        assert kwargs["file"].name == "audio.ogg"
        client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_process_video_captions(self, backend, client, tmp_path):
        """Caption mode returns timecoded transcript lines."""
        video = tmp_path / "clip.mp4"
        video.write_bytes(b"\x00" * 10)
        client.audio.transcriptions.create.return_value = SimpleNamespace(
            text="oi tchau",
            segments=[SimpleNamespace(start=0.0, text=" oi"), SimpleNamespace(start=75.2, text=" tchau")],
        )

        result = await backend.process_video(str(video), "Legende", ChatConfig(use_captions=True))

        assert result == "[00:00] oi\n[01:15] tchau"
        client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_process_video_summary(self, backend, client, tmp_path):
        """Outside caption mode the transcript is summarized."""
        video = tmp_path / "clip.mp4"
        video.write_bytes(b"\x00" * 10)
        client.audio.transcriptions.create.return_value = SimpleNamespace(text="oi tchau", segments=[])

        result = await backend.process_video(str(video), "Resuma", ChatConfig())

        assert result == "Olá!"
        prompt = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert "oi tchau" in prompt

    @pytest.mark.asyncio
    async def test_process_video_missing_file(self, backend):
        """A missing video file is a backend error."""
        with pytest.raises(AIBackendError):
            await backend.process_video("/nonexistent/clip.mp4", "Resuma", ChatConfig())


class TestMediaJobWorker:
    """Tests for MediaJobWorker."""

    @pytest.fixture
    def ai(self):
        mock = AsyncMock()
        mock.process_image.return_value = "Um gato."
        mock.process_video.return_value = "Uma praia."
        return mock

    @pytest.mark.asyncio
    async def test_image_job(self, ai, breaker):
        """Image jobs use the caption as prompt and record success."""
        worker = MediaJobWorker(ai, breaker)
        breaker.record_failure()

        result = await worker(PROCESS_IMAGE, {"media": make_media(), "user_prompt": "Que animal?",
                                              "config": ChatConfig()})

        assert result == "Um gato."
        assert ai.process_image.await_args.args[1] == "Que animal?"
        assert breaker.snapshot().failure_count == 0

    @pytest.mark.asyncio
    async def test_video_job_cleans_temp_file(self, ai, breaker):
        """The temporary video file is removed after processing."""
        worker = MediaJobWorker(ai, breaker)

        with patch("chatrelay.usecases.media_jobs.cleanup_temp_file") as cleanup:
            result = await worker(PROCESS_VIDEO, {"media": make_media("video/mp4"), "config": ChatConfig()})

        assert result == "Uma praia."
        path = ai.process_video.await_args.args[0]
        assert path.endswith(".mp4")
        cleanup.assert_called_once_with(path)

    @pytest.mark.asyncio
    async def test_open_breaker_blocks_job(self, ai, breaker):
        """Jobs fail fast while the breaker is open."""
        for _ in range(5):
            breaker.record_failure()
        worker = MediaJobWorker(ai, breaker)

        with pytest.raises(CircuitOpenError):
            await worker(PROCESS_IMAGE, {"media": make_media()})

        ai.process_image.assert_not_called()

    @pytest.mark.asyncio
    async def test_backend_failure_counts(self, ai, breaker):
        """Backend failures feed the breaker, safety blocks do not."""
        worker = MediaJobWorker(ai, breaker)

        ai.process_image.side_effect = AIBackendError("down")
        with pytest.raises(AIBackendError):
            await worker(PROCESS_IMAGE, {"media": make_media()})
        assert breaker.snapshot().failure_count == 1

        ai.process_image.side_effect = SafetyBlocked("blocked")
        with pytest.raises(SafetyBlocked):
            await worker(PROCESS_IMAGE, {"media": make_media()})
        assert breaker.snapshot().failure_count == 1
