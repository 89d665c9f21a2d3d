"""Whisper speech-to-text over the OpenAI audio transcription API (httpx)."""

from __future__ import annotations

from pathlib import Path

import httpx

from forecast_pipeline.config import settings
from forecast_pipeline.errors import TranscriptionFailed
from forecast_pipeline.utils.logger import logger
from forecast_pipeline.utils.retry import retry_on_rate_limit


class _RateLimited(Exception):
    status_code = 429


class WhisperClient:
    """Uploads an audio file and returns the transcript text."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str = "https://api.openai.com",
        model: str | None = None,
        timeout: float = 300.0,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = base_url.rstrip("/")
        self.model = model or settings.WHISPER_MODEL
        self.timeout = timeout

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def transcribe(self, audio_path: Path, *, language: str | None = None) -> str:
        if not self.available:
            raise TranscriptionFailed("OpenAI API key not configured for Whisper")
        size_mb = audio_path.stat().st_size / (1024 * 1024)
        if size_mb > settings.WHISPER_MAX_FILE_MB:
            raise TranscriptionFailed(
                f"Audio file is {size_mb:.1f} MB, over the "
                f"{settings.WHISPER_MAX_FILE_MB} MB Whisper limit"
            )
        logger.info("[Whisper] Transcribing %s (%.1f MB)", audio_path.name, size_mb)
        try:
            text = await self._post(audio_path, language)
        except _RateLimited as exc:
            raise TranscriptionFailed("Whisper rate limit persisted after retries") from exc
        except httpx.HTTPError as exc:
            raise TranscriptionFailed(f"Whisper request failed: {exc}") from exc
        return text.strip()

    @retry_on_rate_limit(max_retries=3, base_delay=5.0)
    async def _post(self, audio_path: Path, language: str | None) -> str:
        data = {"model": self.model, "response_format": "text"}
        if language:
            data["language"] = language
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            with audio_path.open("rb") as fh:
                resp = await client.post(
                    f"{self.base_url}/v1/audio/transcriptions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    data=data,
                    files={"file": (audio_path.name, fh, "audio/mpeg")},
                )
        if resp.status_code == 429:
            raise _RateLimited("429 Too Many Requests from Whisper")
        resp.raise_for_status()
        return resp.text
