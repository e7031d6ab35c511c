"""Batch transcription and summarization over the OpenAI-compatible HTTP API."""

from api_client import ResilientClient
from artifacts import AudioArtifact
from errors import ApiError
from recorder_config import RecorderConfig

SUMMARY_PROMPT = (
    "You are an expert at summarizing meetings. Read the following transcript, "
    "organize the important points as bullet points, and write a concise, "
    "easy-to-follow summary."
)


class TranscriptionService:
    """Sends finished artifacts to the transcription endpoint and transcripts to the summary endpoint."""

    def __init__(self, config: RecorderConfig, client: ResilientClient | None = None):
        self.config = config
        self.client = client or ResilientClient()

    @property
    def enabled(self) -> bool:
        return self.config.transcription_enabled

    def _headers(self) -> dict:
        if not self.config.api_key:
            raise ApiError(401, "API key missing", kind="auth")
        return {"Authorization": f"Bearer {self.config.api_key}"}

    async def transcribe(self, artifact: AudioArtifact) -> str:
        """Transcribe one artifact. Returns the transcript text."""
        data = {
            "model": self.config.transcription_model,
            "response_format": "json",
        }
        if self.config.language and self.config.language != "auto":
            data["language"] = self.config.language
        print(f"  [transcribe] Uploading {artifact.filename} ({artifact.size} bytes, {artifact.duration_ms} ms)")
        resp = await self.client.request(
            "POST",
            self.config.transcription_url,
            headers=self._headers(),
            files={"file": (artifact.filename, artifact.data, artifact.mime_kind)},
            data=data,
            max_attempts=self.config.max_attempts,
            base_delay_ms=self.config.base_delay_ms,
        )
        try:
            return resp.json()["text"]
        except (ValueError, KeyError) as e:
            raise ApiError(resp.status_code, f"Invalid transcription response: {e}")

    async def summarize(self, text: str) -> str:
        """Summarize a transcript as bullet points."""
        payload = {
            "model": self.config.summary_model,
            "messages": [
                {"role": "system", "content": SUMMARY_PROMPT},
                {"role": "user", "content": text},
            ],
            "max_tokens": 1000,
            "temperature": 0.3,
        }
        resp = await self.client.request(
            "POST",
            self.config.summary_url,
            headers=self._headers(),
            json=payload,
            max_attempts=self.config.max_attempts,
            base_delay_ms=self.config.base_delay_ms,
        )
        try:
            return resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError) as e:
            raise ApiError(resp.status_code, f"Invalid summary response: {e}")

    async def aclose(self):
        await self.client.aclose()
