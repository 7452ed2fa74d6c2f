"""
Provider Contracts

The orchestrator depends only on these three contracts:

- ``ContextProvider.lookup(lat, lng, driving)`` -> ``ContextResult``
- ``NarrationProvider.narrate(text)`` -> ``AudioAsset``
- ``ItinerarySummarizer.summarize(places)`` -> ``str``

Mock implementations generate deterministic placeholder results so the
application runs without any API key.
"""

import hashlib
import logging
from typing import Sequence

import numpy as np

from .models import AudioAsset, ContextResult, Place, Position


logger = logging.getLogger(__name__)


NO_PLACES_MESSAGE = "No places visited yet to build an itinerary."
ITINERARY_UNAVAILABLE = "Itinerary unavailable."
NO_CONTEXT_MESSAGE = "No historical data."


class ContextProvider:
    """Looks up narrative context and places around a position."""

    @property
    def is_configured(self) -> bool:
        """False when credentials are missing; checked before tracking starts."""
        return True

    async def lookup(self, latitude: float, longitude: float, driving: bool = False) -> ContextResult:
        """
        Raises:
            CredentialsMissingError: credential absent or rejected
            ProviderError: any other failure
        """
        raise NotImplementedError


class NarrationProvider:
    """Turns text into playable audio."""

    async def narrate(self, text: str) -> AudioAsset:
        """
        Raises:
            NarrationError: audio could not be produced
        """
        raise NotImplementedError


class ItinerarySummarizer:
    """Summarizes visited places into readable itinerary text."""

    async def summarize(self, places: Sequence[Place]) -> str:
        raise NotImplementedError


def generated_place_id(title: str, uri: str | None) -> str:
    """Deterministic id for places the provider did not identify."""
    digest = hashlib.md5(f"{title}|{uri or ''}".encode()).hexdigest()
    return f"place-{digest[:12]}"


# =============================================================================
# Mock Providers
# =============================================================================

class MockContextProvider(ContextProvider):
    """Placeholder lookups derived from the coordinates."""

    def __init__(self, places_per_lookup: int = 2):
        self.places_per_lookup = places_per_lookup
        logger.info("🎭 Using Mock context provider (no API key required)")

    async def lookup(self, latitude: float, longitude: float, driving: bool = False) -> ContextResult:
        position = Position(latitude=latitude, longitude=longitude)
        grid = f"{latitude:.3f},{longitude:.3f}"

        places = []
        count = 1 if driving else self.places_per_lookup
        for i in range(count):
            title = f"Historic site {i + 1} near {grid}"
            places.append(Place(
                id=generated_place_id(title, None),
                title=title,
                description="Placeholder place from the mock provider.",
                location=position,
            ))

        return ContextResult(
            narrative_text=(
                f"Around {grid} the city grew along old trails and rivers."
                if not driving else ""
            ),
            highlight=f"The streets near {grid} follow a colonial-era path.",
            places=places,
        )


class MockNarrationProvider(NarrationProvider):
    """Produces a short tone instead of speech."""

    def __init__(self, sample_rate: int = 24000, seconds: float = 1.0, frequency: float = 440.0):
        self.sample_rate = sample_rate
        self.seconds = seconds
        self.frequency = frequency

    async def narrate(self, text: str) -> AudioAsset:
        t = np.arange(int(self.sample_rate * self.seconds)) / self.sample_rate
        tone = (0.2 * np.sin(2 * np.pi * self.frequency * t)).astype(np.float32)
        logger.info(f"🎭 Mock narration for: {text[:60]}")
        return AudioAsset(samples=tone.reshape(1, -1), sample_rate=self.sample_rate, channels=1)


class MockItinerarySummarizer(ItinerarySummarizer):
    """Template itinerary listing the place titles."""

    async def summarize(self, places: Sequence[Place]) -> str:
        if not places:
            return NO_PLACES_MESSAGE
        lines = ["Subject: My Route Historian itinerary", "", "Places visited:"]
        lines.extend(f"- {place.title}" for place in places)
        return "\n".join(lines)
