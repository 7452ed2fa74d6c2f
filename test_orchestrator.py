"""
Tests for the exploration orchestrator.

Covers the standing and driving flows, place deduplication, the
single-flight guarantee, error surfacing, the once-per-drive automatic
lookup and narration/audio interplay.
"""

import asyncio

import numpy as np

from route_historian.audio import AudioOutput, PlaybackSource
from route_historian.exceptions import (
    CredentialsMissingError,
    LocationUnavailableError,
    NarrationError,
    ProviderError,
)
from route_historian.models import (
    AudioAsset,
    ContextResult,
    ErrorKind,
    ExplorationMode,
    OutcomeStatus,
    Phase,
    Place,
    Position,
)
from route_historian.orchestrator import (
    ITINERARY_FAILED_MESSAGE,
    LOOKUP_FAILED_MESSAGE,
    ExplorationOrchestrator,
)
from route_historian.providers import (
    NO_PLACES_MESSAGE,
    ContextProvider,
    ItinerarySummarizer,
    NarrationProvider,
)
from route_historian.wake_lock import WakeLock


SE_SQUARE = Position(latitude=-23.5505, longitude=-46.6333)


# =============================================================================
# Fakes
# =============================================================================

def make_place(place_id: str, title: str | None = None) -> Place:
    return Place(id=place_id, title=title or place_id, location=SE_SQUARE)


def make_asset(seconds: float = 0.5) -> AudioAsset:
    samples = np.zeros((1, int(24000 * seconds)), dtype=np.float32)
    return AudioAsset(samples=samples, sample_rate=24000, channels=1)


def founding_result(*places: Place) -> ContextResult:
    return ContextResult(
        narrative_text="Old square.",
        highlight="Founded in 1560.",
        places=list(places) or [make_place("p1", "Praça da Sé")],
    )


class FakeContextProvider(ContextProvider):
    def __init__(self, results=None, error: Exception | None = None, configured: bool = True):
        self.results = list(results or [])
        self.error = error
        self.configured = configured
        self.calls: list[tuple[float, float, bool]] = []
        self.gate: asyncio.Event | None = None

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def lookup(self, latitude, longitude, driving=False):
        self.calls.append((latitude, longitude, driving))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return founding_result()


class FakeNarrationProvider(NarrationProvider):
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def narrate(self, text):
        self.calls.append(text)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return make_asset()


class FakeSource(PlaybackSource):
    def __init__(self, asset, events):
        self.asset = asset
        self.events = events
        self.on_ended = None
        self.stopped = False

    def start(self, on_ended):
        self.on_ended = on_ended
        self.events.append("start")

    def stop(self):
        self.stopped = True
        self.events.append("stop")


class FakeOutput(AudioOutput):
    def __init__(self):
        self.sources: list[FakeSource] = []
        self.events: list[str] = []

    def create_source(self, asset):
        source = FakeSource(asset, self.events)
        self.sources.append(source)
        return source


class FakeSummarizer(ItinerarySummarizer):
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[tuple[Place, ...]] = []

    async def summarize(self, places):
        self.calls.append(tuple(places))
        if self.error is not None:
            raise self.error
        return "Subject: trip\n- " + "\n- ".join(p.title for p in places)


class CountingWakeLock(WakeLock):
    def __init__(self):
        super().__init__()
        self.acquired = 0
        self.released = 0

    def _acquire(self):
        self.acquired += 1

    def _release(self):
        self.released += 1


def build(context=None, narration=None, summarizer=None):
    context = context or FakeContextProvider()
    narration = narration or FakeNarrationProvider()
    output = FakeOutput()
    wake_lock = CountingWakeLock()
    orchestrator = ExplorationOrchestrator(
        context,
        narration_provider=narration,
        audio_output=output,
        itinerary_summarizer=summarizer or FakeSummarizer(),
        wake_lock=wake_lock,
    )
    return orchestrator, context, narration, output, wake_lock


# =============================================================================
# Scenarios
# =============================================================================

def test_standing_manual_explore():
    """Standing mode: highlight pending for a popup, no narration."""
    print("\n🧪 Testing standing-mode manual explore...")

    orchestrator, context, narration, output, _ = build()
    orchestrator.on_location_update(SE_SQUARE)
    assert orchestrator.phase == Phase.READY

    outcome = asyncio.run(orchestrator.explore())
    snapshot = outcome.snapshot

    assert outcome.ok
    assert snapshot.phase == Phase.READY
    assert snapshot.highlight == "Founded in 1560."
    assert snapshot.highlight_pending
    assert snapshot.narrative_text == "Old square."
    assert [p.id for p in snapshot.places] == ["p1"]
    assert snapshot.last_analyzed_position == SE_SQUARE
    assert context.calls == [(-23.5505, -46.6333, False)]
    assert narration.calls == []
    assert output.sources == []

    print("   ✅ Highlight pending, places=[p1], no narration")


def test_driving_auto_explore_narrates():
    """Driving mode: highlight is narrated and played once."""
    print("\n🧪 Testing driving-mode automatic explore...")

    orchestrator, context, narration, output, _ = build()
    orchestrator.set_mode(True)
    orchestrator.on_location_update(SE_SQUARE)

    outcome = asyncio.run(orchestrator.auto_trigger())
    snapshot = outcome.snapshot

    assert outcome.ok
    assert context.calls == [(-23.5505, -46.6333, True)]
    assert narration.calls == ["Founded in 1560."]
    assert len(output.sources) == 1
    assert output.events == ["start"]
    assert not snapshot.highlight_pending
    assert snapshot.is_playing
    assert snapshot.has_audio

    print("   ✅ One narration call, one play call, no popup")


def test_places_deduplicated_first_wins():
    """A repeated place id keeps the original data; new ids are appended."""
    print("\n🧪 Testing place deduplication...")

    context = FakeContextProvider(results=[
        founding_result(make_place("p1", "Praça da Sé")),
        founding_result(make_place("p1", "Renamed square"), make_place("p2", "Pátio do Colégio")),
    ])
    orchestrator, *_ = build(context=context)
    orchestrator.on_location_update(SE_SQUARE)

    async def scenario():
        first = await orchestrator.explore()
        second = await orchestrator.explore()
        return first, second

    first, second = asyncio.run(scenario())

    assert [p.id for p in first.snapshot.places] == ["p1"]
    assert [p.id for p in second.snapshot.places] == ["p1", "p2"]
    assert second.snapshot.places[0].title == "Praça da Sé"

    print("   ✅ places=[p1, p2], original p1 retained")


def test_places_never_shrink():
    """An empty result does not remove accumulated places."""
    print("\n🧪 Testing monotonic place growth...")

    context = FakeContextProvider(results=[
        founding_result(make_place("p1"), make_place("p2")),
        ContextResult(narrative_text="Nothing here."),
    ])
    orchestrator, *_ = build(context=context)
    orchestrator.on_location_update(SE_SQUARE)

    async def scenario():
        await orchestrator.explore()
        return await orchestrator.explore()

    outcome = asyncio.run(scenario())

    assert [p.id for p in outcome.snapshot.places] == ["p1", "p2"]
    assert outcome.snapshot.highlight is None
    assert not outcome.snapshot.highlight_pending

    print("   ✅ Places kept across lookups")


# =============================================================================
# Single flight and errors
# =============================================================================

def test_single_flight():
    """A second explore while one is in flight is a no-op."""
    print("\n🧪 Testing single-flight lookups...")

    orchestrator, context, *_ = build()
    orchestrator.on_location_update(SE_SQUARE)

    async def scenario():
        context.gate = asyncio.Event()
        first = asyncio.get_running_loop().create_task(orchestrator.explore())
        await asyncio.sleep(0)
        assert orchestrator.phase == Phase.ANALYZING

        second = await orchestrator.explore()
        auto = await orchestrator.auto_trigger()

        context.gate.set()
        return await first, second, auto

    first, second, auto = asyncio.run(scenario())

    assert first.ok
    assert second.status == OutcomeStatus.SKIPPED
    assert auto.status == OutcomeStatus.SKIPPED
    assert len(context.calls) == 1
    assert orchestrator.phase == Phase.READY

    print("   ✅ Only one lookup issued")


def test_explore_without_position_is_skipped():
    """No position yet means nothing to look up."""
    print("\n🧪 Testing explore without a position...")

    orchestrator, context, *_ = build()
    outcome = asyncio.run(orchestrator.explore())

    assert outcome.skipped
    assert orchestrator.phase == Phase.IDLE
    assert context.calls == []

    print("   ✅ Skipped while IDLE")


def test_credentials_missing_is_terminal():
    """A rejected credential ends the session in CONFIGURATION_MISSING."""
    print("\n🧪 Testing missing credentials...")

    context = FakeContextProvider(error=CredentialsMissingError("no key"))
    orchestrator, *_ = build(context=context)
    orchestrator.on_location_update(SE_SQUARE)

    async def scenario():
        first = await orchestrator.explore()
        second = await orchestrator.explore()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.status == OutcomeStatus.FAILED
    assert first.error == ErrorKind.CONFIGURATION_MISSING
    assert first.snapshot.phase == Phase.CONFIGURATION_MISSING
    assert first.snapshot.last_error.kind == ErrorKind.CONFIGURATION_MISSING
    assert second.skipped
    assert len(context.calls) == 1

    # Location errors no longer change the phase
    orchestrator.on_location_error(LocationUnavailableError("gone"))
    assert orchestrator.phase == Phase.CONFIGURATION_MISSING

    print("   ✅ Phase stays CONFIGURATION_MISSING")


def test_manual_failure_is_surfaced():
    """A failed manual lookup shows the connection message."""
    print("\n🧪 Testing manual lookup failure...")

    context = FakeContextProvider(error=ProviderError("HTTP 500", status_code=500))
    orchestrator, *_ = build(context=context)
    orchestrator.on_location_update(SE_SQUARE)

    outcome = asyncio.run(orchestrator.explore())

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error == ErrorKind.LOOKUP_FAILED
    assert outcome.message == LOOKUP_FAILED_MESSAGE
    assert outcome.snapshot.phase == Phase.ERROR
    assert outcome.snapshot.last_error.message == LOOKUP_FAILED_MESSAGE

    # ERROR is recoverable
    context.error = None
    retry = asyncio.run(orchestrator.explore())
    assert retry.ok
    assert retry.snapshot.phase == Phase.READY
    assert retry.snapshot.last_error is None

    print("   ✅ Surfaced, then recovered on retry")


def test_auto_failure_is_silent():
    """A failed automatic lookup sets ERROR without a user-facing message."""
    print("\n🧪 Testing silent automatic failure...")

    context = FakeContextProvider(error=ProviderError("timeout"))
    orchestrator, _, narration, _, _ = build(context=context)
    orchestrator.set_mode(True)
    orchestrator.on_location_update(SE_SQUARE)

    outcome = asyncio.run(orchestrator.auto_trigger())

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.message is None
    assert outcome.snapshot.phase == Phase.ERROR
    assert outcome.snapshot.last_error is None
    assert narration.calls == []

    print("   ✅ No surfaced error for automatic lookups")


def test_location_error_surfaced():
    print("\n🧪 Testing location errors...")

    orchestrator, *_ = build()
    outcome = orchestrator.on_location_error(
        LocationUnavailableError("denied", reason=LocationUnavailableError.PERMISSION_DENIED)
    )

    assert outcome.error == ErrorKind.LOCATION_UNAVAILABLE
    assert outcome.snapshot.phase == Phase.ERROR
    assert outcome.snapshot.last_error.message == "GPS permission required."

    print("   ✅ Permission denial surfaced")


def test_location_error_during_lookup_keeps_single_flight():
    """A location failure while a lookup is in flight does not open a second one."""
    print("\n🧪 Testing location error during an in-flight lookup...")

    orchestrator, context, *_ = build()
    orchestrator.on_location_update(SE_SQUARE)

    async def scenario():
        context.gate = asyncio.Event()
        first = asyncio.get_running_loop().create_task(orchestrator.explore())
        await asyncio.sleep(0)

        located = orchestrator.on_location_error(
            LocationUnavailableError("slow fix", reason=LocationUnavailableError.TIMEOUT)
        )
        during = orchestrator.snapshot()
        second = await orchestrator.explore()

        context.gate.set()
        return await first, located, during, second

    first, located, during, second = asyncio.run(scenario())

    assert located.status == OutcomeStatus.FAILED
    assert during.phase == Phase.ANALYZING
    assert during.last_error.kind == ErrorKind.LOCATION_UNAVAILABLE
    assert second.status == OutcomeStatus.SKIPPED
    assert len(context.calls) == 1
    assert first.ok
    assert orchestrator.phase == Phase.READY

    print("   ✅ Error surfaced, phase stayed ANALYZING, one lookup issued")


def test_credentials_failure_elsewhere_during_lookup_is_terminal():
    """CONFIGURATION_MISSING reached mid-lookup survives the lookup's completion."""
    print("\n🧪 Testing credential failure during an in-flight lookup...")

    for driving, lookup_error in ((False, None), (True, None), (False, ProviderError("HTTP 500"))):
        summarizer = FakeSummarizer(error=CredentialsMissingError("API_KEY_INVALID"))
        orchestrator, context, narration, output, wake_lock = build(summarizer=summarizer)
        orchestrator.on_location_update(SE_SQUARE)

        async def scenario():
            await orchestrator.explore()
            orchestrator.set_mode(driving)
            narration.calls.clear()

            context.gate = asyncio.Event()
            context.error = lookup_error
            lookup = asyncio.get_running_loop().create_task(orchestrator.explore())
            await asyncio.sleep(0)
            assert orchestrator.phase == Phase.ANALYZING

            itinerary = await orchestrator.generate_itinerary()
            context.gate.set()
            return itinerary, await lookup

        itinerary, outcome = asyncio.run(scenario())

        assert itinerary.error == ErrorKind.CONFIGURATION_MISSING
        assert outcome.status == OutcomeStatus.SKIPPED
        assert outcome.error == ErrorKind.CONFIGURATION_MISSING
        assert outcome.snapshot.phase == Phase.CONFIGURATION_MISSING
        assert outcome.snapshot.last_error.kind == ErrorKind.CONFIGURATION_MISSING
        assert narration.calls == []
        assert output.sources == []
        assert not wake_lock.held

    print("   ✅ Late result and late failure both dropped, phase stays terminal")


# =============================================================================
# Driving mode
# =============================================================================

def test_auto_trigger_once_per_epoch():
    """The automatic lookup seeds each drive once."""
    print("\n🧪 Testing automatic lookup per driving epoch...")

    orchestrator, context, *_ = build()
    orchestrator.on_location_update(SE_SQUARE)

    async def scenario():
        standing = await orchestrator.auto_trigger()
        assert standing.skipped

        orchestrator.set_mode(True)
        first = await orchestrator.auto_trigger()
        orchestrator.on_location_update(Position(latitude=-23.5510, longitude=-46.6340))
        repeat = await orchestrator.auto_trigger()

        orchestrator.set_mode(False)
        orchestrator.set_mode(True)
        assert orchestrator.snapshot().last_analyzed_position is None
        next_epoch = await orchestrator.auto_trigger()
        return first, repeat, next_epoch

    first, repeat, next_epoch = asyncio.run(scenario())

    assert first.ok
    assert repeat.skipped
    assert next_epoch.ok
    assert len(context.calls) == 2

    print("   ✅ One lookup per epoch")


def test_leaving_driving_mode_stops_audio():
    print("\n🧪 Testing audio stop when leaving driving mode...")

    orchestrator, _, _, output, wake_lock = build()
    orchestrator.set_mode(True)
    orchestrator.on_location_update(SE_SQUARE)
    asyncio.run(orchestrator.auto_trigger())

    assert orchestrator.audio.is_playing
    assert wake_lock.held

    outcome = orchestrator.set_mode(False)

    assert output.sources[0].stopped
    assert not outcome.snapshot.is_playing
    assert not outcome.snapshot.has_audio
    assert outcome.snapshot.mode == ExplorationMode.STANDING
    assert not wake_lock.held
    assert (wake_lock.acquired, wake_lock.released) == (1, 1)

    print("   ✅ Audio stopped, wake lock released")


def test_late_narration_discarded():
    """Narration that completes after driving mode ended is never played."""
    print("\n🧪 Testing late narration after leaving driving mode...")

    narration = FakeNarrationProvider()
    orchestrator, _, _, output, _ = build(narration=narration)
    orchestrator.set_mode(True)
    orchestrator.on_location_update(SE_SQUARE)

    async def scenario():
        narration.gate = asyncio.Event()
        task = asyncio.get_running_loop().create_task(orchestrator.auto_trigger())
        for _ in range(5):
            await asyncio.sleep(0)
        assert narration.calls == ["Founded in 1560."]

        orchestrator.set_mode(False)
        narration.gate.set()
        return await task

    outcome = asyncio.run(scenario())

    assert outcome.ok
    assert output.sources == []
    assert not outcome.snapshot.has_audio
    assert not outcome.snapshot.is_playing

    print("   ✅ Late audio discarded")


def test_drive_restarted_during_lookup_discards_narration():
    """A lookup started in one drive never plays audio in the next."""
    print("\n🧪 Testing a drive restarted during the lookup...")

    orchestrator, context, narration, output, _ = build()
    orchestrator.set_mode(True)
    orchestrator.on_location_update(SE_SQUARE)

    async def scenario():
        context.gate = asyncio.Event()
        task = asyncio.get_running_loop().create_task(orchestrator.auto_trigger())
        await asyncio.sleep(0)
        assert orchestrator.phase == Phase.ANALYZING

        orchestrator.set_mode(False)
        orchestrator.set_mode(True)
        context.gate.set()
        return await task

    outcome = asyncio.run(scenario())

    assert outcome.ok
    assert outcome.snapshot.driving
    assert output.sources == []
    assert not outcome.snapshot.is_playing

    print("   ✅ Narration bound to the epoch the lookup started in")


def test_narration_failure_isolated():
    """A narration failure leaves the lookup result intact."""
    print("\n🧪 Testing narration failure isolation...")

    orchestrator, _, _, output, _ = build(narration=FakeNarrationProvider(error=NarrationError("tts down")))
    orchestrator.set_mode(True)
    orchestrator.on_location_update(SE_SQUARE)

    outcome = asyncio.run(orchestrator.auto_trigger())

    assert outcome.ok
    assert outcome.snapshot.phase == Phase.READY
    assert [p.id for p in outcome.snapshot.places] == ["p1"]
    assert outcome.snapshot.last_error is None
    assert output.sources == []

    print("   ✅ Lookup kept, nothing played")


def test_replay_and_stop():
    print("\n🧪 Testing replay and stop actions...")

    orchestrator, _, _, output, _ = build()
    assert orchestrator.replay_audio().skipped

    orchestrator.set_mode(True)
    orchestrator.on_location_update(SE_SQUARE)
    asyncio.run(orchestrator.auto_trigger())

    stopped = orchestrator.stop_audio()
    assert not stopped.snapshot.is_playing
    assert stopped.snapshot.has_audio

    replayed = orchestrator.replay_audio()
    assert replayed.ok
    assert replayed.snapshot.is_playing
    assert output.sources[1].asset is output.sources[0].asset

    # Completion callback flips the snapshot back
    output.sources[1].on_ended()
    assert not orchestrator.snapshot().is_playing

    print("   ✅ Replay reuses the same asset")


# =============================================================================
# Presentation actions and observation
# =============================================================================

def test_manual_explore_availability():
    print("\n🧪 Testing manual explore availability...")

    orchestrator, *_ = build()
    assert not orchestrator.snapshot().manual_explore_available

    orchestrator.on_location_update(SE_SQUARE)
    assert orchestrator.snapshot().manual_explore_available

    asyncio.run(orchestrator.explore())
    assert not orchestrator.snapshot().manual_explore_available  # popup pending

    orchestrator.dismiss_highlight()
    snapshot = orchestrator.snapshot()
    assert snapshot.manual_explore_available
    assert snapshot.highlight == "Founded in 1560."

    assert orchestrator.select_place("p1").ok
    assert not orchestrator.snapshot().manual_explore_available
    assert orchestrator.select_place("unknown").skipped

    # A new manual explore clears the focus
    outcome = asyncio.run(orchestrator.explore())
    assert outcome.snapshot.selected_place_id is None

    orchestrator.set_mode(True)
    assert not orchestrator.snapshot().manual_explore_available

    print("   ✅ Guard follows mode, selection and popup")


def test_subscribe_and_unsubscribe():
    print("\n🧪 Testing snapshot subscription...")

    orchestrator, *_ = build()
    received = []

    def broken(snapshot):
        raise RuntimeError("listener bug")

    orchestrator.subscribe(broken)
    unsubscribe = orchestrator.subscribe(received.append)

    orchestrator.on_location_update(SE_SQUARE)
    assert len(received) == 1
    assert received[0].phase == Phase.READY

    asyncio.run(orchestrator.explore())
    phases = [s.phase for s in received]
    assert Phase.ANALYZING in phases
    assert phases[-1] == Phase.READY

    count = len(received)
    unsubscribe()
    unsubscribe()
    orchestrator.dismiss_highlight()
    assert len(received) == count

    print("   ✅ Snapshots pushed, broken listener tolerated")


def test_itinerary():
    print("\n🧪 Testing itinerary generation...")

    summarizer = FakeSummarizer()
    orchestrator, *_ = build(summarizer=summarizer)

    empty = asyncio.run(orchestrator.generate_itinerary())
    assert empty.ok
    assert empty.message == NO_PLACES_MESSAGE
    assert summarizer.calls == []

    orchestrator.on_location_update(SE_SQUARE)
    asyncio.run(orchestrator.explore())
    outcome = asyncio.run(orchestrator.generate_itinerary())
    assert outcome.ok
    assert "Praça da Sé" in outcome.message
    assert [p.id for p in summarizer.calls[0]] == ["p1"]

    summarizer.error = ProviderError("quota")
    failed = asyncio.run(orchestrator.generate_itinerary())
    assert failed.status == OutcomeStatus.FAILED
    assert failed.message == ITINERARY_FAILED_MESSAGE
    assert failed.snapshot.phase == Phase.READY

    print("   ✅ Empty short-circuit, failure leaves phase alone")


def run_all_tests():
    """Run all tests."""
    print("=" * 60)
    print("Exploration Orchestrator Tests")
    print("=" * 60)

    test_standing_manual_explore()
    test_driving_auto_explore_narrates()
    test_places_deduplicated_first_wins()
    test_places_never_shrink()
    test_single_flight()
    test_explore_without_position_is_skipped()
    test_credentials_missing_is_terminal()
    test_manual_failure_is_surfaced()
    test_auto_failure_is_silent()
    test_location_error_surfaced()
    test_location_error_during_lookup_keeps_single_flight()
    test_credentials_failure_elsewhere_during_lookup_is_terminal()
    test_auto_trigger_once_per_epoch()
    test_leaving_driving_mode_stops_audio()
    test_late_narration_discarded()
    test_drive_restarted_during_lookup_discards_narration()
    test_narration_failure_isolated()
    test_replay_and_stop()
    test_manual_explore_availability()
    test_subscribe_and_unsubscribe()
    test_itinerary()

    print("\n" + "=" * 60)
    print("🎉 All orchestrator tests passed!")
    print("=" * 60)


if __name__ == "__main__":
    run_all_tests()
