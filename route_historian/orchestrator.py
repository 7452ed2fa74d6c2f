"""
Exploration Orchestrator

Owns the exploration state and decides when to look up context, how to
merge results and when to narrate.

Phases::

    IDLE -> READY -> ANALYZING -> READY      (success)
                     ANALYZING -> ERROR      (recoverable, next explore may run)
    any  -> CONFIGURATION_MISSING            (terminal for the session)

Guarantees:
- single flight: ``explore`` while ANALYZING is a no-op
- places are unique by id, first occurrence wins, never removed
- driving mode narrates highlights; standing mode marks them for a popup
- leaving driving mode stops audio; narration that finishes after the
  driving epoch ended is discarded instead of played
- public operations return an ``Outcome`` and never raise provider errors

State changes are pushed to subscribers as immutable snapshots.
"""

import asyncio
import logging
from typing import Callable, Sequence

from .audio import AudioChannel, AudioOutput, NullAudioOutput
from .exceptions import CredentialsMissingError, LocationUnavailableError
from .models import (
    ErrorKind,
    ExplorationMode,
    OrchestratorSnapshot,
    Outcome,
    OutcomeStatus,
    Phase,
    Place,
    PlaybackStatus,
    Position,
    SurfacedError,
)
from .providers import (
    NO_PLACES_MESSAGE,
    ContextProvider,
    ItinerarySummarizer,
    NarrationProvider,
)
from .wake_lock import WakeLock


logger = logging.getLogger(__name__)


SnapshotListener = Callable[[OrchestratorSnapshot], None]

CONFIGURATION_MISSING_MESSAGE = "An API key is required. Set GEMINI_API_KEY and restart."
LOOKUP_FAILED_MESSAGE = "Could not connect to history."
ITINERARY_FAILED_MESSAGE = "Could not generate the itinerary."
LOCATION_MESSAGES = {
    LocationUnavailableError.PERMISSION_DENIED: "GPS permission required.",
    LocationUnavailableError.TIMEOUT: "Could not get a GPS fix in time.",
    LocationUnavailableError.UNAVAILABLE: "Location is unavailable.",
}


class ExplorationOrchestrator:
    """
    Central state machine between location updates, providers and audio.

    All methods are meant to run on one event loop; transitions between
    awaits are never interleaved.
    """

    def __init__(
        self,
        context_provider: ContextProvider,
        narration_provider: NarrationProvider | None = None,
        audio_output: AudioOutput | None = None,
        itinerary_summarizer: ItinerarySummarizer | None = None,
        wake_lock: WakeLock | None = None,
    ):
        self.context_provider = context_provider
        self.narration_provider = narration_provider
        self.itinerary_summarizer = itinerary_summarizer
        self.wake_lock = wake_lock or WakeLock()
        self.audio = AudioChannel(
            audio_output or NullAudioOutput(),
            on_status_change=self._on_playback_status,
        )

        self._phase = Phase.IDLE
        self._mode = ExplorationMode.STANDING
        self._position: Position | None = None
        self._places: dict[str, Place] = {}
        self._narrative_text = ""
        self._highlight: str | None = None
        self._highlight_pending = False
        self._selected_place_id: str | None = None
        self._last_error: SurfacedError | None = None
        self._last_analyzed: Position | None = None
        self._driving_epoch = 0
        self._listeners: list[SnapshotListener] = []

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def mode(self) -> ExplorationMode:
        return self._mode

    @property
    def driving(self) -> bool:
        return self._mode == ExplorationMode.DRIVING

    @property
    def places(self) -> tuple[Place, ...]:
        return tuple(self._places.values())

    def snapshot(self) -> OrchestratorSnapshot:
        return OrchestratorSnapshot(
            phase=self._phase,
            mode=self._mode,
            position=self._position,
            places=tuple(self._places.values()),
            narrative_text=self._narrative_text,
            highlight=self._highlight,
            highlight_pending=self._highlight_pending,
            selected_place_id=self._selected_place_id,
            last_error=self._last_error,
            last_analyzed_position=self._last_analyzed,
            is_playing=self.audio.is_playing,
            has_audio=self.audio.current_asset is not None,
        )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    def _outcome(
        self,
        status: OutcomeStatus,
        error: ErrorKind | None = None,
        message: str | None = None,
    ) -> Outcome:
        return Outcome(status=status, error=error, message=message, snapshot=self.snapshot())

    def _set_phase(self, phase: Phase) -> None:
        if phase != self._phase:
            logger.debug(f"Phase {self._phase.value} -> {phase.value}")
        self._phase = phase

    # -------------------------------------------------------------------------
    # Location
    # -------------------------------------------------------------------------

    def on_location_update(self, position: Position) -> Outcome:
        """Record the newest position; the first one makes the orchestrator READY."""
        self._position = position
        if self._phase == Phase.IDLE:
            self._set_phase(Phase.READY)
        self._notify()
        return self._outcome(OutcomeStatus.OK)

    def on_location_error(self, error: LocationUnavailableError) -> Outcome:
        """Surface a location failure; the user must grant permission or retry."""
        if self._phase == Phase.CONFIGURATION_MISSING:
            return self._outcome(OutcomeStatus.SKIPPED)

        message = LOCATION_MESSAGES.get(error.reason, LOCATION_MESSAGES[LocationUnavailableError.UNAVAILABLE])
        self._last_error = SurfacedError(kind=ErrorKind.LOCATION_UNAVAILABLE, message=message)
        # An in-flight lookup keeps ANALYZING until its own result arrives
        if self._phase != Phase.ANALYZING:
            self._set_phase(Phase.ERROR)
        self._notify()
        return self._outcome(OutcomeStatus.FAILED, ErrorKind.LOCATION_UNAVAILABLE, message)

    def mark_configuration_missing(self, message: str = CONFIGURATION_MISSING_MESSAGE) -> Outcome:
        """Enter the terminal CONFIGURATION_MISSING phase."""
        logger.error(f"🔑 Configuration missing: {message}")
        self._last_error = SurfacedError(kind=ErrorKind.CONFIGURATION_MISSING, message=message)
        self._set_phase(Phase.CONFIGURATION_MISSING)
        self.audio.stop()
        self.wake_lock.release()
        self._notify()
        return self._outcome(OutcomeStatus.FAILED, ErrorKind.CONFIGURATION_MISSING, message)

    # -------------------------------------------------------------------------
    # Exploration
    # -------------------------------------------------------------------------

    async def explore(self, position: Position | None = None, auto: bool = False) -> Outcome:
        """
        Look up context around ``position`` (defaults to the current one).

        A manual explore (``auto=False``) starts a fresh view: narrative,
        highlight and selected place are cleared first. Automatic failures
        are silent; manual failures are surfaced.
        """
        if self._phase == Phase.CONFIGURATION_MISSING:
            return self._outcome(OutcomeStatus.SKIPPED, ErrorKind.CONFIGURATION_MISSING)
        if self._phase == Phase.ANALYZING:
            logger.debug("Explore ignored: a lookup is already in flight")
            return self._outcome(OutcomeStatus.SKIPPED, message="A lookup is already in flight")

        position = position or self._position
        if position is None:
            return self._outcome(OutcomeStatus.SKIPPED, message="No position yet")

        epoch = self._driving_epoch
        self._set_phase(Phase.ANALYZING)
        if not auto:
            self._narrative_text = ""
            self._highlight = None
            self._highlight_pending = False
            self._selected_place_id = None
        self._last_error = None
        self._notify()

        logger.info(
            f"🔎 {'Auto' if auto else 'Manual'} lookup at "
            f"({position.latitude:.5f}, {position.longitude:.5f}), mode={self._mode.value}"
        )

        try:
            result = await self.context_provider.lookup(
                position.latitude,
                position.longitude,
                self.driving,
            )
        except CredentialsMissingError as e:
            if self._phase == Phase.CONFIGURATION_MISSING:
                return self._outcome(OutcomeStatus.SKIPPED, ErrorKind.CONFIGURATION_MISSING)
            return self.mark_configuration_missing(f"{CONFIGURATION_MISSING_MESSAGE} ({e})")
        except asyncio.CancelledError:
            if self._phase == Phase.ANALYZING:
                self._set_phase(Phase.READY)
                self._notify()
            raise
        except Exception as e:
            return self._lookup_failed(e, auto)

        if self._phase == Phase.CONFIGURATION_MISSING:
            logger.info("Configuration went missing during the lookup; result dropped")
            return self._outcome(OutcomeStatus.SKIPPED, ErrorKind.CONFIGURATION_MISSING)

        added = self._merge_places(result.places)
        self._narrative_text = result.narrative_text
        self._highlight = result.highlight
        self._highlight_pending = False
        self._last_analyzed = position
        self._set_phase(Phase.READY)
        logger.info(f"✅ Lookup complete: {added} new places ({len(self._places)} total)")

        if result.highlight and self.driving:
            self._notify()
            await self._narrate(result.highlight, epoch)
        else:
            self._highlight_pending = bool(result.highlight)
            self._notify()

        return self._outcome(OutcomeStatus.OK)

    async def auto_trigger(self) -> Outcome:
        """
        Seed one automatic lookup per driving epoch.

        Fires only in driving mode, with a position, outside ANALYZING and
        before anything was analyzed in the current epoch.
        """
        if (
            not self.driving
            or self._position is None
            or self._phase in (Phase.ANALYZING, Phase.CONFIGURATION_MISSING)
            or self._last_analyzed is not None
        ):
            return self._outcome(OutcomeStatus.SKIPPED)

        return await self.explore(self._position, auto=True)

    def _lookup_failed(self, error: Exception, auto: bool) -> Outcome:
        if self._phase == Phase.CONFIGURATION_MISSING:
            logger.info(f"Lookup failed after configuration went missing: {error}")
            return self._outcome(OutcomeStatus.SKIPPED, ErrorKind.CONFIGURATION_MISSING)

        self._set_phase(Phase.ERROR)
        if auto:
            logger.warning(f"⚠️  Automatic lookup failed silently: {error}")
        else:
            logger.warning(f"⚠️  Lookup failed: {error}")
            self._last_error = SurfacedError(kind=ErrorKind.LOOKUP_FAILED, message=LOOKUP_FAILED_MESSAGE)
        self._notify()
        return self._outcome(
            OutcomeStatus.FAILED,
            ErrorKind.LOOKUP_FAILED,
            None if auto else LOOKUP_FAILED_MESSAGE,
        )

    def _merge_places(self, places: Sequence[Place]) -> int:
        """Append unseen places, keeping the first data seen for each id."""
        added = 0
        for place in places:
            if place.id not in self._places:
                self._places[place.id] = place
                added += 1
        return added

    async def _narrate(self, text: str, epoch: int) -> None:
        if self.narration_provider is None:
            return

        try:
            asset = await self.narration_provider.narrate(text)
        except Exception as e:
            logger.warning(f"🔇 Narration failed ({ErrorKind.NARRATION_FAILED.value}): {e}")
            return

        if not self.driving or epoch != self._driving_epoch:
            logger.info("🔇 Driving mode ended during narration; discarding audio")
            return

        self.audio.play(asset)
        self._notify()

    # -------------------------------------------------------------------------
    # Mode and presentation actions
    # -------------------------------------------------------------------------

    def set_mode(self, driving: bool) -> Outcome:
        """
        Switch between standing and driving mode.

        Entering driving mode starts a new epoch (the next auto trigger may
        fire). Leaving it stops and releases narration audio.
        """
        mode = ExplorationMode.DRIVING if driving else ExplorationMode.STANDING
        if mode == self._mode:
            return self._outcome(OutcomeStatus.OK)

        self._mode = mode
        if driving:
            self._driving_epoch += 1
            self._last_analyzed = None
            self.wake_lock.acquire()
            logger.info(f"🚗 Driving mode on (epoch {self._driving_epoch})")
        else:
            self.audio.release()
            self.wake_lock.release()
            logger.info("🚶 Driving mode off")

        self._notify()
        return self._outcome(OutcomeStatus.OK)

    def select_place(self, place_id: str | None) -> Outcome:
        """Focus a known place, or clear the focus with None."""
        if place_id is not None and place_id not in self._places:
            return self._outcome(OutcomeStatus.SKIPPED, message=f"Unknown place: {place_id}")
        self._selected_place_id = place_id
        self._notify()
        return self._outcome(OutcomeStatus.OK)

    def dismiss_highlight(self) -> Outcome:
        """The highlight popup was closed."""
        self._highlight_pending = False
        self._notify()
        return self._outcome(OutcomeStatus.OK)

    def stop_audio(self) -> Outcome:
        self.audio.stop()
        return self._outcome(OutcomeStatus.OK)

    def replay_audio(self) -> Outcome:
        if self.audio.current_asset is None:
            return self._outcome(OutcomeStatus.SKIPPED, message="No narration to replay")
        self.audio.replay()
        return self._outcome(OutcomeStatus.OK)

    def _on_playback_status(self, status: PlaybackStatus) -> None:
        logger.debug(f"Playback {status.value}")
        self._notify()

    async def generate_itinerary(self) -> Outcome:
        """
        Summarize the accumulated places.

        With no places the fixed message is returned without calling the
        summarizer. Failures are surfaced but never change the phase.
        """
        places = self.places
        if not places:
            return self._outcome(OutcomeStatus.OK, message=NO_PLACES_MESSAGE)
        if self.itinerary_summarizer is None:
            return self._outcome(OutcomeStatus.SKIPPED, message="No itinerary summarizer configured")

        try:
            text = await self.itinerary_summarizer.summarize(places)
        except CredentialsMissingError as e:
            return self.mark_configuration_missing(f"{CONFIGURATION_MISSING_MESSAGE} ({e})")
        except Exception as e:
            logger.warning(f"⚠️  Itinerary generation failed: {e}")
            self._last_error = SurfacedError(kind=ErrorKind.LOOKUP_FAILED, message=ITINERARY_FAILED_MESSAGE)
            self._notify()
            return self._outcome(OutcomeStatus.FAILED, ErrorKind.LOOKUP_FAILED, ITINERARY_FAILED_MESSAGE)

        return self._outcome(OutcomeStatus.OK, message=text)

    def shutdown(self) -> None:
        """Release audio and the wake lock."""
        self.audio.release()
        self.wake_lock.release()
        self._listeners.clear()
