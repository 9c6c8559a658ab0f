"""AssemblyAI client: transcribe meeting audio into chapters."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from gitwhisper import config
from gitwhisper.errors import AuthError, RateLimitError, TransientError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class Chapter:
    start_ms: int
    end_ms: int
    headline: str
    summary: str
    gist: str


def format_timestamp(ms: int) -> str:
    """Format milliseconds as ``H:MM:SS``."""
    total = max(int(ms), 0) // 1000
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{seconds:02d}"


class AssemblyAIClient:
    """Submits an audio URL for transcription and polls until chapters are ready."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        poll_interval: float | None = None,
        max_wait: float | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        api_key = api_key or config.ASSEMBLYAI_API_KEY
        if not api_key:
            raise AuthError("ASSEMBLYAI_API_KEY is not configured")
        self._client = httpx.Client(
            base_url=base_url or config.ASSEMBLYAI_API_URL,
            headers={"authorization": api_key},
            timeout=timeout if timeout is not None else config.STAGE_TIMEOUT_SECS,
            transport=transport,
        )
        self._poll_interval = poll_interval if poll_interval is not None else config.TRANSCRIBE_POLL_SECS
        self._max_wait = max_wait if max_wait is not None else config.TRANSCRIBE_MAX_WAIT_SECS
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"AssemblyAI request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise TransientError(f"AssemblyAI unreachable: {e}") from e
        status = resp.status_code
        if status in (401, 403):
            raise AuthError("AssemblyAI rejected the API key")
        if status == 429:
            raise RateLimitError("AssemblyAI rate limit hit")
        if status >= 500:
            raise TransientError(f"AssemblyAI server error {status}")
        if not resp.is_success:
            raise ValidationError(f"AssemblyAI returned {status}: {resp.text[:200]}")
        return resp.json()

    def transcribe_chapters(self, audio_url: str) -> list[Chapter]:
        """Transcribe ``audio_url`` with auto chapters and return the chapters.

        Raises ValidationError if AssemblyAI cannot process the audio and
        TransientError if it does not finish within the configured wait.
        """
        job = self._request(
            "POST", "/v2/transcript", json={"audio_url": audio_url, "auto_chapters": True}
        )
        transcript_id = job["id"]
        logger.info("Submitted transcript %s for %s", transcript_id, audio_url)

        waited = 0.0
        while True:
            data = self._request("GET", f"/v2/transcript/{transcript_id}")
            status = data.get("status")
            if status == "completed":
                break
            if status == "error":
                raise ValidationError(f"Transcription failed: {data.get('error') or 'unknown error'}")
            if waited >= self._max_wait:
                raise TransientError(
                    f"Transcript {transcript_id} still {status} after {waited:.0f}s"
                )
            self._sleep(self._poll_interval)
            waited += self._poll_interval

        chapters = [
            Chapter(
                start_ms=int(c.get("start") or 0),
                end_ms=int(c.get("end") or 0),
                headline=c.get("headline") or "",
                summary=c.get("summary") or "",
                gist=c.get("gist") or "",
            )
            for c in data.get("chapters") or []
        ]
        logger.info("Transcript %s completed with %d chapters", transcript_id, len(chapters))
        return chapters
