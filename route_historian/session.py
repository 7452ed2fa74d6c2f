"""
Session Module

Wires a location source to the exploration orchestrator and owns the
subscription lifecycle:

1. Credential check before any location subscription
2. Continuous watch while tracking or driving, one-shot read otherwise
3. Each position: ``on_location_update`` then ``auto_trigger``
4. Re-subscribe on mode/tracking changes
5. Tear-down when the orchestrator reaches CONFIGURATION_MISSING
"""

import asyncio
import logging
from typing import Any, Coroutine

from .config import AppConfig, get_config
from .exceptions import LocationUnavailableError
from .location import LocationOptions, LocationSource, LocationSubscription
from .models import OrchestratorSnapshot, Outcome, OutcomeStatus, Phase, Position
from .orchestrator import ExplorationOrchestrator


logger = logging.getLogger(__name__)


class ExplorationSession:
    """
    Runs one exploration session on the current event loop.

    The session never retries a failed watch; a new one starts only on
    ``start``, ``set_mode`` or ``set_tracking``.
    """

    def __init__(
        self,
        orchestrator: ExplorationOrchestrator,
        location_source: LocationSource,
        config: AppConfig | None = None,
        tracking: bool = False,
    ):
        self.orchestrator = orchestrator
        self.location_source = location_source
        self.config = config or get_config()
        self.options = LocationOptions.from_config(self.config.location)
        self.tracking = tracking

        self._subscription: LocationSubscription | None = None
        self._tasks: set[asyncio.Task] = set()
        self._started = False
        self._stopped = False
        self._unsubscribe = orchestrator.subscribe(self._on_snapshot)

    @property
    def started(self) -> bool:
        return self._started and not self._stopped

    @property
    def watching(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def start(self) -> Outcome:
        """
        Check credentials, then subscribe to the location source.

        Must be called from a running event loop.
        """
        if self._stopped:
            return Outcome(status=OutcomeStatus.SKIPPED, message="Session stopped")

        if not self.orchestrator.context_provider.is_configured:
            return self.orchestrator.mark_configuration_missing()

        self._started = True
        self._subscribe()
        logger.info(f"▶️  Session started ({self.location_source.name})")
        return Outcome(status=OutcomeStatus.OK, snapshot=self.orchestrator.snapshot())

    def set_mode(self, driving: bool) -> Outcome:
        """Switch mode and restart the subscription with the matching strategy."""
        outcome = self.orchestrator.set_mode(driving)
        if self.started:
            self._subscribe()
        return outcome

    def set_tracking(self, tracking: bool) -> None:
        if tracking == self.tracking:
            return
        self.tracking = tracking
        if self.started:
            self._subscribe()

    async def explore(self) -> Outcome:
        """Manual exploration at the current position."""
        return await self.orchestrator.explore()

    async def wait(self) -> None:
        """Wait until the subscription ends and triggered work has finished."""
        if self._subscription is not None:
            await self._subscription.wait()
        await self.drain()

    async def drain(self) -> None:
        """Wait for lookups and narrations triggered by location updates."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stop(self) -> None:
        """Cancel everything and release audio and the wake lock. Idempotent."""
        if self._stopped:
            return
        self._stopped = True

        self._cancel_subscription()
        for task in list(self._tasks):
            task.cancel()
        self._unsubscribe()
        self.orchestrator.shutdown()
        logger.info("⏹️  Session stopped")

    # -------------------------------------------------------------------------
    # Subscription handling
    # -------------------------------------------------------------------------

    def _subscribe(self) -> None:
        self._cancel_subscription()
        if self.orchestrator.phase == Phase.CONFIGURATION_MISSING:
            return

        if self.tracking or self.orchestrator.driving:
            logger.debug("Watching location continuously")
            self._subscription = self.location_source.watch(
                self._on_position,
                self._on_error,
                self.options,
            )
        else:
            logger.debug("Reading location once")
            self._subscription = LocationSubscription(self._spawn(self._read_once()))

    def _cancel_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    async def _read_once(self) -> None:
        try:
            position = await self.location_source.get_current_position(self.options)
        except LocationUnavailableError as e:
            self._on_error(e)
            return
        self._on_position(position)

    def _on_position(self, position: Position) -> None:
        self.orchestrator.on_location_update(position)
        self._spawn(self.orchestrator.auto_trigger())

    def _on_error(self, error: LocationUnavailableError) -> None:
        logger.warning(f"📍 Location unavailable: {error}")
        self.orchestrator.on_location_error(error)

    def _on_snapshot(self, snapshot: OrchestratorSnapshot) -> None:
        if snapshot.phase == Phase.CONFIGURATION_MISSING and self._subscription is not None:
            logger.info("Configuration missing; cancelling location subscription")
            self._cancel_subscription()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
