"""
Audio Module

Decodes narration audio and owns the single active playback.

- ``decode_pcm16`` turns raw 16-bit PCM into an ``AudioAsset``.
- ``AudioOutput`` / ``PlaybackSource`` are the injected device handle.
- ``AudioChannel`` guarantees at most one playing source: every ``play``
  stops the previous source first, and device failures never propagate.
"""

import asyncio
import logging
from typing import Callable

import numpy as np

from .exceptions import NarrationError
from .models import AudioAsset, ErrorKind, PlaybackStatus


logger = logging.getLogger(__name__)


def decode_pcm16(data: bytes, sample_rate: int = 24000, channels: int = 1) -> AudioAsset:
    """
    Decode interleaved little-endian 16-bit PCM into a float32 asset.

    Trailing bytes that do not form a whole frame are dropped.

    Raises:
        NarrationError: if the buffer holds no complete frame
    """
    if channels < 1:
        raise NarrationError(f"Invalid channel count: {channels}")

    frame_bytes = 2 * channels
    usable = len(data) - (len(data) % frame_bytes)
    if usable <= 0:
        raise NarrationError("Narration audio is empty")

    pcm = np.frombuffer(data[:usable], dtype="<i2")
    frames = pcm.size // channels
    samples = pcm.reshape(frames, channels).T.astype(np.float32) / 32768.0

    return AudioAsset(samples=samples, sample_rate=sample_rate, channels=channels)


def _call_on_loop(loop: asyncio.AbstractEventLoop | None, callback: Callable[[], None]) -> None:
    """Run ``callback`` on ``loop`` from any thread, or inline without a loop."""
    if loop is None:
        callback()
        return
    try:
        loop.call_soon_threadsafe(callback)
    except RuntimeError:
        # Loop already closed during shutdown
        logger.debug("Event loop closed before playback completion was delivered")


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


# =============================================================================
# Device Handles
# =============================================================================

class PlaybackSource:
    """One playable binding of an asset to an output device."""

    def start(self, on_ended: Callable[[], None]) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError


class AudioOutput:
    """Injected audio device handle."""

    def create_source(self, asset: AudioAsset) -> PlaybackSource:
        raise NotImplementedError

    def close(self) -> None:
        """Release the device."""


class _NullSource(PlaybackSource):
    def __init__(self, asset: AudioAsset):
        self.asset = asset
        self._handle: asyncio.Handle | None = None

    def start(self, on_ended: Callable[[], None]) -> None:
        logger.info(f"[AUDIO] {self.asset.duration_seconds:.1f}s narration")
        loop = _running_loop()
        if loop is None:
            on_ended()
        else:
            self._handle = loop.call_soon(on_ended)

    def stop(self) -> None:
        if self._handle:
            self._handle.cancel()
            self._handle = None


class NullAudioOutput(AudioOutput):
    """Output for headless runs: logs the narration and completes immediately."""

    def create_source(self, asset: AudioAsset) -> PlaybackSource:
        return _NullSource(asset)


class _SoundDeviceSource(PlaybackSource):
    def __init__(self, sd, asset: AudioAsset, device: int | str | None):
        self._sd = sd
        self.asset = asset
        self.device = device
        self._stream = None
        self._offset = 0

    def start(self, on_ended: Callable[[], None]) -> None:
        loop = _running_loop()
        data = self.asset.interleaved()

        def callback(outdata, frames, time_info, status):
            chunk = data[self._offset:self._offset + frames]
            outdata[:len(chunk)] = chunk
            self._offset += len(chunk)
            if len(chunk) < frames:
                outdata[len(chunk):] = 0
                raise self._sd.CallbackStop()

        self._stream = self._sd.OutputStream(
            samplerate=self.asset.sample_rate,
            channels=self.asset.channels,
            dtype="float32",
            device=self.device,
            callback=callback,
            finished_callback=lambda: _call_on_loop(loop, on_ended),
        )
        self._stream.start()

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


class SoundDeviceOutput(AudioOutput):
    """
    Plays assets through PortAudio using ``sounddevice``.

    Requires the ``audio`` extra. Completion callbacks arrive on the
    PortAudio thread and are marshalled back onto the event loop that
    started playback.
    """

    def __init__(self, device: int | str | None = None):
        import sounddevice

        self._sd = sounddevice
        self.device = device
        logger.info(f"🔊 Audio output: {device if device is not None else 'default device'}")

    def create_source(self, asset: AudioAsset) -> PlaybackSource:
        return _SoundDeviceSource(self._sd, asset, self.device)


# =============================================================================
# Audio Channel
# =============================================================================

class AudioChannel:
    """
    Owns at most one active playback.

    Completion of a source flips the status back to ``STOPPED`` without an
    explicit ``stop``. Completions from sources that were already replaced
    are ignored.

    Device failures are logged and tagged in ``last_failure`` as
    ``PLAYBACK_FAILED``; they are never surfaced to the user.
    """

    def __init__(
        self,
        output: AudioOutput,
        on_status_change: Callable[[PlaybackStatus], None] | None = None,
    ):
        self.output = output
        self.on_status_change = on_status_change
        self._source: PlaybackSource | None = None
        self._asset: AudioAsset | None = None
        self._status = PlaybackStatus.STOPPED
        self._generation = 0
        self.last_failure: ErrorKind | None = None

    @property
    def status(self) -> PlaybackStatus:
        return self._status

    @property
    def is_playing(self) -> bool:
        return self._status == PlaybackStatus.PLAYING

    @property
    def current_asset(self) -> AudioAsset | None:
        """The most recently played asset, kept for replay."""
        return self._asset

    def play(self, asset: AudioAsset) -> PlaybackStatus:
        """Stop any current source, then start ``asset``."""
        self._generation += 1
        generation = self._generation
        self._stop_source()
        self._asset = asset

        try:
            source = self.output.create_source(asset)
        except Exception as e:
            logger.warning(f"🔇 Could not bind narration to audio output ({ErrorKind.PLAYBACK_FAILED.value}): {e}")
            self.last_failure = ErrorKind.PLAYBACK_FAILED
            self._set_status(PlaybackStatus.STOPPED)
            return self._status

        self._source = source
        self._set_status(PlaybackStatus.PLAYING)
        try:
            source.start(lambda: self._on_ended(generation))
        except Exception as e:
            logger.warning(f"🔇 Audio playback failed to start ({ErrorKind.PLAYBACK_FAILED.value}): {e}")
            self.last_failure = ErrorKind.PLAYBACK_FAILED
            if self._generation == generation:
                self._source = None
                self._set_status(PlaybackStatus.STOPPED)
        else:
            self.last_failure = None

        return self._status

    def stop(self) -> PlaybackStatus:
        """Stop the current source, if any. Idempotent."""
        self._generation += 1
        self._stop_source()
        self._set_status(PlaybackStatus.STOPPED)
        return self._status

    def replay(self) -> PlaybackStatus:
        """Play the most recent asset again; no-op when there is none."""
        if self._asset is None:
            return self._status
        return self.play(self._asset)

    def release(self) -> None:
        """Stop playback and forget the current asset."""
        self.stop()
        self._asset = None

    def _stop_source(self) -> None:
        source, self._source = self._source, None
        if source is None:
            return
        try:
            source.stop()
        except Exception as e:
            # Device may already be torn down
            logger.debug(f"Ignoring audio stop failure ({ErrorKind.PLAYBACK_FAILED.value}): {e}")

    def _on_ended(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._source = None
        self._set_status(PlaybackStatus.STOPPED)

    def _set_status(self, status: PlaybackStatus) -> None:
        changed = status != self._status
        self._status = status
        if changed and self.on_status_change:
            self.on_status_change(status)
