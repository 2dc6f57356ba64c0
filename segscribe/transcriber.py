"""Audio transcription backends."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from .config import resolve_api_key
from .errors import BackendFailure, FallbackFailure, NetworkUnavailable
from .models import Config


class TranscriptionBackend(Protocol):
    """Common interface for transcription backends."""

    name: str

    def transcribe(self, audio_path: Path) -> str:
        """Return the transcript text or raise the backend's failure type."""


class RemoteBackend:
    """Hosted transcription over HTTP (OpenAI-compatible multipart endpoint)."""

    name = "remote"

    def __init__(
        self,
        url: str,
        model: str,
        api_key: Optional[str],
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not api_key:
            raise RuntimeError(
                "An API key is required for remote transcription. Set OPENAI_API_KEY or "
                "run `segscribe config --openai-api-key ...`."
            )
        self.url = url
        self.model = model
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.Client(timeout=timeout)

    def transcribe(self, audio_path: Path) -> str:
        audio_path = Path(audio_path)
        try:
            with audio_path.open("rb") as fh:
                response = self._client.post(
                    self.url,
                    headers=self._headers,
                    data={"model": self.model},
                    files={"file": (audio_path.name, fh, "audio/wav")},
                )
        except OSError as exc:
            raise BackendFailure(f"Cannot read {audio_path.name}: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkUnavailable(f"Cannot reach transcription endpoint for {audio_path.name}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BackendFailure(f"Request for {audio_path.name} failed: {exc}") from exc

        if response.status_code != 200:
            raise BackendFailure(
                f"Transcription endpoint returned {response.status_code} for {audio_path.name}"
            )
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise BackendFailure(f"Unparsable response for {audio_path.name}") from exc

        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise BackendFailure(f"Response for {audio_path.name} has no `text` field")
        return text.strip()

    def close(self) -> None:
        self._client.close()


class LocalBackend:
    """On-device transcription using the `openai-whisper` package.

    The model is loaded on first use so that a recorder which never needs the
    fallback does not pay for it.
    """

    name = "local"

    def __init__(self, model_name: str, model: Any = None) -> None:
        self.model_name = model_name
        self._model = model
        self._lock = threading.Lock()

    def _load(self) -> Any:
        with self._lock:
            if self._model is None:
                try:
                    import whisper  # type: ignore
                except Exception as exc:  # pragma: no cover - optional dependency
                    raise FallbackFailure(
                        "The `openai-whisper` package is required for local transcription. "
                        "Install segscribe[local]."
                    ) from exc
                logging.info("Loading whisper model %s", self.model_name)
                try:
                    self._model = whisper.load_model(self.model_name)
                except Exception as exc:
                    raise FallbackFailure(f"Cannot load whisper model {self.model_name}: {exc}") from exc
        return self._model

    def transcribe(self, audio_path: Path) -> str:
        model = self._load()
        try:
            result = model.transcribe(str(audio_path), task="transcribe", temperature=0.0)
        except Exception as exc:
            raise FallbackFailure(f"Local transcription failed for {Path(audio_path).name}: {exc}") from exc
        text = (result.get("text") or "").strip()
        if not text:
            raise FallbackFailure(f"Local transcription produced no text for {Path(audio_path).name}")
        return text


def build_backends(config: Config, client: Optional[httpx.Client] = None) -> tuple[RemoteBackend, LocalBackend]:
    """Return the remote and fallback backends described by the configuration."""

    remote = RemoteBackend(
        url=config.remote_url,
        model=config.remote_model,
        api_key=resolve_api_key(config),
        timeout=config.api_timeout,
        client=client,
    )
    return remote, LocalBackend(config.whisper_model)
