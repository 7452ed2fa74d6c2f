"""
Gemini Client Module

Talks to the Gemini ``generateContent`` REST endpoint over httpx and
adapts it to the provider contracts:

- GeminiContextProvider: Maps-grounded lookup, highlight extraction, places
- GeminiNarrationProvider: text-to-speech, 16-bit PCM decoded with numpy
- GeminiItinerarySummarizer: e-mail style itinerary text

Features:
- SSL certificate handling and proxy support (via http_utils)
- Retry with exponential backoff on 429/5xx and connection errors
- Credential failures (missing key, 401/403, invalid key) kept distinct
  from other provider errors
"""

import asyncio
import base64
import binascii
import logging
from typing import Any, Sequence

import httpx

from .audio import decode_pcm16
from .config import AppConfig, GeminiConfig, NarrationConfig, get_config
from .exceptions import CredentialsMissingError, NarrationError, ProviderError
from .http_utils import create_httpx_client
from .models import AudioAsset, ContextResult, ExplorationMode, Place, Position
from .prompt_builder import PromptBuilder, extract_highlight
from .providers import (
    ITINERARY_UNAVAILABLE,
    NO_CONTEXT_MESSAGE,
    NO_PLACES_MESSAGE,
    ContextProvider,
    ItinerarySummarizer,
    NarrationProvider,
    generated_place_id,
)


logger = logging.getLogger(__name__)


DEFAULT_PLACE_TITLE = "Historic site"
DEFAULT_PLACE_DESCRIPTION = "Identified by Google Maps."


class GeminiClient:
    """
    Async client for the Gemini REST API.

    One instance is shared by the three adapters; it lazily opens an
    httpx client and can be used as an async context manager.
    """

    def __init__(
        self,
        config: GeminiConfig | None = None,
        app_config: AppConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.app_config = app_config or get_config()
        self.config = config or self.app_config.gemini
        self.base_url = self.config.base_url.rstrip("/")
        self.retry_config = self.config.retry
        self._client = http_client

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    async def __aenter__(self) -> "GeminiClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if not self._client:
            self._client = create_httpx_client(
                config=self.app_config,
                timeout=self.config.timeout,
            )
        return self._client

    async def generate_content(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST a generateContent request with retry logic.

        Raises:
            CredentialsMissingError: no key, or the key was rejected
            ProviderError: any other failure after retries
        """
        if not self.is_configured:
            raise CredentialsMissingError("GEMINI_API_KEY is not set")

        client = self._ensure_client()
        url = f"{self.base_url}/models/{model}:generateContent"
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key,
        }

        last_error: Exception | None = None
        attempts = self.retry_config.max_attempts

        for attempt in range(attempts):
            try:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
                logger.debug(f"✅ Gemini {model} responded (attempt {attempt + 1})")
                return data

            except httpx.HTTPStatusError as e:
                last_error = e
                status = e.response.status_code

                if status in (401, 403) or (status == 400 and "API_KEY_INVALID" in e.response.text):
                    raise CredentialsMissingError(f"Gemini rejected the API key (HTTP {status})")
                if status != 429 and status < 500:
                    raise ProviderError(f"Gemini HTTP error {status}", status_code=status)

                logger.warning(
                    f"🔄 Gemini returned {status} "
                    f"(attempt {attempt + 1}/{attempts})"
                )

            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout) as e:
                last_error = e
                logger.warning(
                    f"🔄 Gemini connection error (attempt {attempt + 1}/{attempts}): {e}"
                )

            except ValueError as e:
                raise ProviderError(f"Gemini returned invalid JSON: {e}")

            if attempt < attempts - 1:
                await asyncio.sleep(self.retry_config.get_delay(attempt))

        raise ProviderError(f"Gemini request failed after {attempts} attempts: {last_error}")


def _first_candidate(data: dict[str, Any]) -> dict[str, Any]:
    candidates = data.get("candidates") or []
    return candidates[0] if candidates else {}


def response_text(data: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    parts = (_first_candidate(data).get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))


def grounded_places(data: dict[str, Any], position: Position) -> list[Place]:
    """
    Build places from the Maps grounding chunks of a response.

    The grounding metadata carries no coordinates, so every place is
    pinned to the queried position.
    """
    metadata = _first_candidate(data).get("groundingMetadata") or {}
    places: list[Place] = []

    for chunk in metadata.get("groundingChunks") or []:
        maps = chunk.get("maps") if isinstance(chunk, dict) else None
        if not maps:
            continue

        title = maps.get("title") or DEFAULT_PLACE_TITLE
        uri = maps.get("uri") or (maps.get("googleMapsUriReference") or {}).get("uri")
        places.append(Place(
            id=maps.get("placeId") or generated_place_id(title, uri),
            title=title,
            description=DEFAULT_PLACE_DESCRIPTION,
            location=position,
            external_map_uri=uri,
        ))

    return places


class GeminiContextProvider(ContextProvider):
    """Context lookups grounded with the Google Maps tool."""

    def __init__(
        self,
        client: GeminiClient,
        prompt_builder: PromptBuilder | None = None,
    ):
        self.client = client
        self.prompt_builder = prompt_builder or PromptBuilder(client.app_config.narration)

    @property
    def is_configured(self) -> bool:
        return self.client.is_configured

    async def lookup(self, latitude: float, longitude: float, driving: bool = False) -> ContextResult:
        mode = ExplorationMode.DRIVING if driving else ExplorationMode.STANDING
        payload = {
            "contents": [{
                "role": "user",
                "parts": [{"text": self.prompt_builder.build_context_prompt(latitude, longitude, mode)}],
            }],
            "tools": [{"googleMaps": {}}],
            "toolConfig": {
                "retrievalConfig": {
                    "latLng": {"latitude": latitude, "longitude": longitude},
                },
            },
        }

        data = await self.client.generate_content(self.client.config.context_model, payload)

        full_text = response_text(data).strip() or NO_CONTEXT_MESSAGE
        narrative, highlight = extract_highlight(full_text, self.prompt_builder.highlight_prefix)
        places = grounded_places(data, Position(latitude=latitude, longitude=longitude))

        logger.info(
            f"📜 Context for ({latitude:.5f}, {longitude:.5f}): "
            f"{len(places)} places, highlight={'yes' if highlight else 'no'}"
        )
        return ContextResult(narrative_text=narrative, highlight=highlight, places=places)


class GeminiNarrationProvider(NarrationProvider):
    """Speech synthesis with a prebuilt Gemini voice."""

    def __init__(
        self,
        client: GeminiClient,
        narration_config: NarrationConfig | None = None,
        prompt_builder: PromptBuilder | None = None,
    ):
        self.client = client
        self.narration_config = narration_config or client.app_config.narration
        self.prompt_builder = prompt_builder or PromptBuilder(self.narration_config)

    async def narrate(self, text: str) -> AudioAsset:
        payload = {
            "contents": [{"parts": [{"text": self.prompt_builder.build_narration_prompt(text)}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {
                        "prebuiltVoiceConfig": {"voiceName": self.client.config.voice_name},
                    },
                },
            },
        }

        try:
            data = await self.client.generate_content(self.client.config.tts_model, payload)
        except (CredentialsMissingError, ProviderError) as e:
            raise NarrationError(f"Narration request failed: {e}") from e

        parts = (_first_candidate(data).get("content") or {}).get("parts") or [{}]
        encoded = (parts[0].get("inlineData") or {}).get("data")
        if not encoded:
            raise NarrationError("No audio data returned")

        try:
            pcm = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise NarrationError(f"Audio payload is not valid base64: {e}") from e

        asset = decode_pcm16(
            pcm,
            sample_rate=self.narration_config.sample_rate,
            channels=self.narration_config.channels,
        )
        logger.info(f"🗣️  Narration ready ({asset.duration_seconds:.1f}s)")
        return asset


class GeminiItinerarySummarizer(ItinerarySummarizer):
    """E-mail itinerary built from the visited places."""

    def __init__(self, client: GeminiClient, prompt_builder: PromptBuilder | None = None):
        self.client = client
        self.prompt_builder = prompt_builder or PromptBuilder(client.app_config.narration)

    async def summarize(self, places: Sequence[Place]) -> str:
        if not places:
            return NO_PLACES_MESSAGE

        payload = {
            "contents": [{
                "role": "user",
                "parts": [{"text": self.prompt_builder.build_itinerary_prompt(places)}],
            }],
        }
        data = await self.client.generate_content(self.client.config.context_model, payload)
        return response_text(data).strip() or ITINERARY_UNAVAILABLE
