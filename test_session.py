"""
Tests for the session wiring between location sources and the orchestrator.
"""

import asyncio

from route_historian.config import AppConfig
from route_historian.exceptions import CredentialsMissingError, LocationUnavailableError
from route_historian.location import LocationSource, StaticLocationSource
from route_historian.models import ErrorKind, OutcomeStatus, Phase
from route_historian.orchestrator import ExplorationOrchestrator
from route_historian.session import ExplorationSession

from test_orchestrator import CountingWakeLock, FakeContextProvider, FakeNarrationProvider, FakeOutput


def fast_config() -> AppConfig:
    config = AppConfig()
    config.location.poll_interval = 0.01
    config.location.timeout = 1.0
    return config


class DeniedSource(LocationSource):
    name = "denied"

    async def _read(self, options):
        raise LocationUnavailableError("no permission", reason=LocationUnavailableError.PERMISSION_DENIED)


def build_session(context=None, source=None, tracking=False):
    context = context or FakeContextProvider()
    narration = FakeNarrationProvider()
    wake_lock = CountingWakeLock()
    orchestrator = ExplorationOrchestrator(
        context,
        narration_provider=narration,
        audio_output=FakeOutput(),
        wake_lock=wake_lock,
    )
    source = source or StaticLocationSource(-23.5505, -46.6333)
    session = ExplorationSession(orchestrator, source, fast_config(), tracking=tracking)
    return session, orchestrator, context, narration, wake_lock


async def settle(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def test_standing_start_reads_once():
    print("\n🧪 Testing standing-mode session start...")

    session, orchestrator, context, *_ = build_session()

    async def scenario():
        outcome = session.start()
        await session.wait()
        assert not session.watching
        explored = await session.explore()
        session.stop()
        return outcome, explored

    outcome, explored = asyncio.run(scenario())

    assert outcome.ok
    assert orchestrator.snapshot().position is not None
    assert explored.ok
    assert len(context.calls) == 1
    assert explored.snapshot.highlight_pending

    print("   ✅ One-shot read, no automatic lookup, manual explore works")


def test_driving_session_auto_triggers_once():
    print("\n🧪 Testing driving-mode session...")

    session, orchestrator, context, narration, wake_lock = build_session()

    async def scenario():
        session.set_mode(True)
        session.start()
        assert session.watching
        await settle(lambda: orchestrator.snapshot().last_analyzed_position is not None)
        await session.drain()
        await asyncio.sleep(0.05)
        calls = len(context.calls)
        session.stop()
        session.stop()
        return calls

    calls = asyncio.run(scenario())

    assert calls == 1
    assert narration.calls == ["Founded in 1560."]
    assert not wake_lock.held
    assert not session.watching

    print("   ✅ One automatic lookup, stop is idempotent")


def test_missing_credentials_never_subscribe():
    print("\n🧪 Testing session start without credentials...")

    session, orchestrator, context, *_ = build_session(context=FakeContextProvider(configured=False))

    async def scenario():
        return session.start()

    outcome = asyncio.run(scenario())

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.error == ErrorKind.CONFIGURATION_MISSING
    assert orchestrator.phase == Phase.CONFIGURATION_MISSING
    assert not session.watching
    assert orchestrator.snapshot().position is None
    assert context.calls == []

    print("   ✅ No location subscription")


def test_rejected_credentials_cancel_watch():
    print("\n🧪 Testing credentials rejected during a drive...")

    context = FakeContextProvider(error=CredentialsMissingError("API_KEY_INVALID"))
    session, orchestrator, *_ = build_session(context=context)

    async def scenario():
        session.set_mode(True)
        session.start()
        await settle(lambda: orchestrator.phase == Phase.CONFIGURATION_MISSING)
        watching = session.watching
        session.stop()
        return watching

    watching = asyncio.run(scenario())

    assert not watching
    assert orchestrator.snapshot().last_error.kind == ErrorKind.CONFIGURATION_MISSING

    print("   ✅ Subscription torn down on CONFIGURATION_MISSING")


def test_location_error_surfaced_without_retry():
    print("\n🧪 Testing location failure in a session...")

    session, orchestrator, *_ = build_session(source=DeniedSource(), tracking=True)

    async def scenario():
        session.start()
        await session.wait()
        watching = session.watching
        session.stop()
        return watching

    watching = asyncio.run(scenario())

    snapshot = orchestrator.snapshot()
    assert not watching
    assert snapshot.phase == Phase.ERROR
    assert snapshot.last_error.kind == ErrorKind.LOCATION_UNAVAILABLE
    assert snapshot.last_error.message == "GPS permission required."

    print("   ✅ Error surfaced once, watch ended")


def run_all_tests():
    """Run all tests."""
    print("=" * 60)
    print("Exploration Session Tests")
    print("=" * 60)

    test_standing_start_reads_once()
    test_driving_session_auto_triggers_once()
    test_missing_credentials_never_subscribe()
    test_rejected_credentials_cancel_watch()
    test_location_error_surfaced_without_retry()

    print("\n" + "=" * 60)
    print("🎉 All session tests passed!")
    print("=" * 60)


if __name__ == "__main__":
    run_all_tests()
