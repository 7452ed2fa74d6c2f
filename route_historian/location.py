"""
Location Source Module

Adapters that turn a device or a recorded trace into observer positions.

Every source offers:
- ``get_current_position``: one-shot read honouring the staleness
  (``maximum_age``) and acquisition timeout policy
- ``watch``: continuous subscription, cancellable any number of times

A timeout or permission denial ends a watch with a single error callback;
retrying is left to the caller.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .config import LocationConfig
from .exceptions import LocationUnavailableError
from .models import Position


logger = logging.getLogger(__name__)


PositionCallback = Callable[[Position], None]
ErrorCallback = Callable[[LocationUnavailableError], None]


@dataclass
class LocationOptions:
    """Accuracy, timeout and staleness knobs for a read or a watch."""

    high_accuracy: bool = True
    timeout: float = 10.0
    maximum_age: float = 5.0
    poll_interval: float = 3.0

    @classmethod
    def from_config(cls, config: LocationConfig) -> "LocationOptions":
        return cls(
            high_accuracy=config.high_accuracy,
            timeout=config.timeout,
            maximum_age=config.maximum_age,
            poll_interval=config.poll_interval,
        )


class LocationSubscription:
    """Handle for a running watch."""

    def __init__(self, task: asyncio.Task | None = None):
        self._task = task
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled and self._task is not None and not self._task.done()

    def cancel(self) -> None:
        """Stop the watch. Safe to call repeatedly."""
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait until the watch ends (source exhausted, error or cancel)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class LocationSource:
    """
    Base class for location sources.

    Subclasses implement ``_read``, returning a fresh reading, or None when
    the source has nothing more to deliver.
    """

    name = "location"

    def __init__(self, options: LocationOptions | None = None):
        self.options = options or LocationOptions()
        self.last_position: Position | None = None
        self.consecutive_failures = 0

    async def _read(self, options: LocationOptions) -> Position | None:
        raise NotImplementedError

    def poll_delay(self, options: LocationOptions) -> float:
        """Seconds to wait between readings while watching."""
        return options.poll_interval

    async def get_current_position(self, options: LocationOptions | None = None) -> Position:
        """
        Read the current position.

        A cached reading no older than ``maximum_age`` is reused.

        Raises:
            LocationUnavailableError: on timeout, permission denial or an
                exhausted source
        """
        opts = options or self.options

        cached = self._fresh_cached(opts)
        if cached is not None:
            return cached

        position = await self._acquire(opts)
        if position is None:
            raise LocationUnavailableError(f"{self.name} has no more positions")
        return position

    def _fresh_cached(self, opts: LocationOptions) -> Position | None:
        cached = self.last_position
        if cached is not None and cached.age() <= opts.maximum_age:
            return cached
        return None

    async def _acquire(self, opts: LocationOptions) -> Position | None:
        """Take one reading within the timeout; None means the source is exhausted."""
        try:
            position = await asyncio.wait_for(self._read(opts), timeout=opts.timeout)
        except asyncio.TimeoutError:
            self.consecutive_failures += 1
            raise LocationUnavailableError(
                f"No {self.name} fix within {opts.timeout:.0f}s",
                reason=LocationUnavailableError.TIMEOUT,
            )
        except LocationUnavailableError:
            self.consecutive_failures += 1
            raise
        except (OSError, ValueError, KeyError) as e:
            self.consecutive_failures += 1
            raise LocationUnavailableError(f"{self.name} read failed: {e}") from e

        if position is not None:
            self.last_position = position
            self.consecutive_failures = 0
        return position

    def watch(
        self,
        on_position: PositionCallback,
        on_error: ErrorCallback,
        options: LocationOptions | None = None,
    ) -> LocationSubscription:
        """
        Start delivering positions, in reading order, until cancelled.

        Must be called from a running event loop.
        """
        opts = options or self.options
        subscription = LocationSubscription()
        task = asyncio.get_running_loop().create_task(
            self._watch_loop(subscription, on_position, on_error, opts)
        )
        subscription._task = task
        return subscription

    async def _watch_loop(
        self,
        subscription: LocationSubscription,
        on_position: PositionCallback,
        on_error: ErrorCallback,
        opts: LocationOptions,
    ) -> None:
        delivered: Position | None = None

        while not subscription._cancelled:
            position = self._fresh_cached(opts)
            if position is None:
                try:
                    position = await self._acquire(opts)
                except LocationUnavailableError as e:
                    logger.warning(f"📍 {self.name} watch ended: {e} ({e.reason})")
                    if not subscription._cancelled:
                        on_error(e)
                    return

                if position is None:
                    logger.info(f"📍 {self.name} finished")
                    return

            if position is not delivered and not subscription._cancelled:
                delivered = position
                on_position(position)

            await asyncio.sleep(self.poll_delay(opts))

    def get_status(self) -> str:
        """Short status string for display."""
        if self.consecutive_failures == 0:
            return f"{self.name} OK"
        return f"{self.name}: {self.consecutive_failures} consecutive failures"


# =============================================================================
# Concrete Sources
# =============================================================================

class StaticLocationSource(LocationSource):
    """Always reports the same coordinates (testing without GPS)."""

    name = "static position"

    def __init__(
        self,
        latitude: float,
        longitude: float,
        heading: float | None = None,
        options: LocationOptions | None = None,
    ):
        super().__init__(options)
        self.latitude = latitude
        self.longitude = longitude
        self.heading = heading

    async def _read(self, options: LocationOptions) -> Position | None:
        return Position(latitude=self.latitude, longitude=self.longitude, heading=self.heading)


class TraceLocationSource(LocationSource):
    """
    Plays back a recorded trace.

    File format::

        {"trace": [{"elapsed": 0.0, "location": {"lat": .., "lon": .., "heading": ..}}, ...]}

    Entries with a null location are dropped readings and are skipped.
    Pacing follows the recorded ``elapsed`` deltas divided by ``speed``.
    """

    name = "trace playback"

    def __init__(
        self,
        path: str | Path,
        speed: float = 1.0,
        options: LocationOptions | None = None,
    ):
        super().__init__(options)
        self.path = Path(path)
        self.speed = speed
        self.index = 0

        with open(self.path) as f:
            self.trace: list[dict[str, Any]] = json.load(f)["trace"]
        logger.info(f"Loaded trace from {self.path} ({len(self.trace)} entries)")

    @staticmethod
    def _position_from_entry(location: dict[str, Any]) -> Position:
        return Position(
            latitude=location.get("lat", location.get("latitude")),
            longitude=location.get("lon", location.get("longitude")),
            heading=location.get("heading"),
        )

    async def _read(self, options: LocationOptions) -> Position | None:
        while self.index < len(self.trace):
            entry = self.trace[self.index]
            self.index += 1
            if entry.get("location"):
                return self._position_from_entry(entry["location"])
            self.consecutive_failures += 1
        return None

    def _fresh_cached(self, opts: LocationOptions) -> Position | None:
        # Every trace entry is a new reading
        return None

    def poll_delay(self, options: LocationOptions) -> float:
        if self.index <= 0 or self.index >= len(self.trace):
            return options.poll_interval / self.speed

        prev_elapsed = self.trace[self.index - 1].get("elapsed", 0)
        next_elapsed = self.trace[self.index].get("elapsed", 0)
        return max(0.0, min((next_elapsed - prev_elapsed) / self.speed, 5.0))

    def is_finished(self) -> bool:
        return self.index >= len(self.trace)


class TermuxLocationSource(LocationSource):
    """Reads the device GPS through ``termux-location`` (Termux:API)."""

    name = "termux GPS"

    async def _read(self, options: LocationOptions) -> Position | None:
        provider = "gps" if options.high_accuracy else "network"
        try:
            process = await asyncio.create_subprocess_exec(
                "termux-location", "-p", provider, "-r", "once",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise LocationUnavailableError(
                "termux-location not found (install Termux:API)",
                reason=LocationUnavailableError.UNAVAILABLE,
            )

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            raise

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip() or "unknown error"
            reason = (
                LocationUnavailableError.PERMISSION_DENIED
                if "permission" in message.lower()
                else LocationUnavailableError.UNAVAILABLE
            )
            raise LocationUnavailableError(f"termux-location failed: {message}", reason=reason)

        if not stdout.strip():
            raise LocationUnavailableError("termux-location returned no data")

        data = json.loads(stdout)
        return Position(
            latitude=data["latitude"],
            longitude=data["longitude"],
            heading=data.get("bearing"),
        )
