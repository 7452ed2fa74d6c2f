"""
Data models for Route Historian.

This module defines the values exchanged between the location source,
the providers, the audio channel and the exploration orchestrator,
plus the immutable snapshots handed to the presentation layer.
"""

import time
from dataclasses import dataclass
from enum import Enum

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class Phase(str, Enum):
    """Lifecycle phase of the exploration orchestrator."""
    IDLE = "idle"
    READY = "ready"
    ANALYZING = "analyzing"
    ERROR = "error"
    CONFIGURATION_MISSING = "configuration_missing"


class ExplorationMode(str, Enum):
    """Operating mode: interactive on foot, or autonomous while driving."""
    STANDING = "standing"
    DRIVING = "driving"


class ErrorKind(str, Enum):
    """Failure taxonomy surfaced in outcomes and snapshots."""
    CONFIGURATION_MISSING = "configuration_missing"
    LOCATION_UNAVAILABLE = "location_unavailable"
    LOOKUP_FAILED = "lookup_failed"
    NARRATION_FAILED = "narration_failed"
    PLAYBACK_FAILED = "playback_failed"


class PlaybackStatus(str, Enum):
    """Audio channel status."""
    PLAYING = "playing"
    STOPPED = "stopped"


class OutcomeStatus(str, Enum):
    """Result of a public orchestrator operation."""
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


# =============================================================================
# Location and Places
# =============================================================================

class Position(BaseModel):
    """Observer position reported by the location source."""
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude in degrees")
    heading: float | None = Field(None, description="Heading in degrees, if known")
    timestamp: float = Field(default_factory=time.time, description="Epoch seconds of the reading")

    @property
    def lat_lng(self) -> tuple[float, float]:
        """Return (lat, lng) tuple."""
        return (self.latitude, self.longitude)

    def age(self, now: float | None = None) -> float:
        """Seconds elapsed since the reading was taken."""
        return (now if now is not None else time.time()) - self.timestamp


class Place(BaseModel):
    """A point of interest discovered by a context lookup."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable place identifier")
    title: str
    description: str = ""
    location: Position
    external_map_uri: str | None = Field(None, description="Link to the place on an external map")


class ContextResult(BaseModel):
    """Structured result of one context lookup."""
    narrative_text: str = ""
    highlight: str | None = Field(None, description="Single short fact, if the provider returned one")
    places: list[Place] = Field(default_factory=list)


@dataclass(frozen=True, eq=False)
class AudioAsset:
    """
    Decoded, playable narration audio.

    ``samples`` has shape ``(channels, frames)`` and holds float32 values
    in [-1.0, 1.0). Identity matters: replay hands the very same instance
    back to the audio channel.
    """
    samples: np.ndarray
    sample_rate: int
    channels: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[-1]) if self.samples.size else 0

    @property
    def duration_seconds(self) -> float:
        if not self.sample_rate:
            return 0.0
        return self.frames / self.sample_rate

    def interleaved(self) -> np.ndarray:
        """Return a ``(frames, channels)`` array as audio devices expect."""
        return np.ascontiguousarray(self.samples.T)


# =============================================================================
# Orchestrator State Snapshots
# =============================================================================

class SurfacedError(BaseModel):
    """An error meant to be shown to the user."""
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str


class OrchestratorSnapshot(BaseModel):
    """Immutable view of the orchestrator state for the presentation layer."""
    model_config = ConfigDict(frozen=True)

    phase: Phase
    mode: ExplorationMode
    position: Position | None = None
    places: tuple[Place, ...] = ()
    narrative_text: str = ""
    highlight: str | None = None
    highlight_pending: bool = Field(False, description="A highlight popup should be presented")
    selected_place_id: str | None = None
    last_error: SurfacedError | None = None
    last_analyzed_position: Position | None = None
    is_playing: bool = False
    has_audio: bool = False

    @property
    def driving(self) -> bool:
        return self.mode == ExplorationMode.DRIVING

    @property
    def manual_explore_available(self) -> bool:
        """Whether the interactive "explore here" action should be enabled."""
        return (
            self.position is not None
            and self.phase not in (Phase.ANALYZING, Phase.CONFIGURATION_MISSING)
            and not self.driving
            and self.selected_place_id is None
            and not self.highlight_pending
        )


class Outcome(BaseModel):
    """Tagged result of a public orchestrator operation."""
    model_config = ConfigDict(frozen=True)

    status: OutcomeStatus
    error: ErrorKind | None = None
    message: str | None = None
    snapshot: OrchestratorSnapshot | None = None

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    @property
    def skipped(self) -> bool:
        return self.status == OutcomeStatus.SKIPPED
