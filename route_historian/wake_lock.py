"""Keep-awake handle held while driving mode is active."""

import logging
import subprocess


logger = logging.getLogger(__name__)


class WakeLock:
    """
    Injected keep-awake resource.

    ``acquire`` and ``release`` never raise; a failure is logged and the
    lock stays in its previous state.
    """

    def __init__(self):
        self.held = False

    def _acquire(self) -> None:
        pass

    def _release(self) -> None:
        pass

    def acquire(self) -> bool:
        if self.held:
            return True
        try:
            self._acquire()
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Wake lock failed: {e}")
            return False
        self.held = True
        logger.debug("Wake lock active")
        return True

    def release(self) -> None:
        if not self.held:
            return
        try:
            self._release()
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Wake lock release failed: {e}")
        self.held = False


class TermuxWakeLock(WakeLock):
    """Keeps an Android device awake through Termux:API."""

    def _acquire(self) -> None:
        subprocess.run(["termux-wake-lock"], capture_output=True, timeout=5, check=True)

    def _release(self) -> None:
        subprocess.run(["termux-wake-unlock"], capture_output=True, timeout=5, check=True)
