"""Exception hierarchy for Route Historian adapters."""


class RouteHistorianError(Exception):
    """Base exception for all route_historian errors."""


class CredentialsMissingError(RouteHistorianError):
    """No API key configured, or the provider rejected it."""


class ProviderError(RouteHistorianError):
    """Context or itinerary provider failed (HTTP, payload, retries exhausted)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NarrationError(RouteHistorianError):
    """Narration audio could not be generated or decoded."""


class PlaybackError(RouteHistorianError):
    """The audio device refused to start or stop a source."""


class LocationUnavailableError(RouteHistorianError):
    """A position could not be acquired.

    ``reason`` is one of ``permission_denied``, ``timeout`` or ``unavailable``.
    """

    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"

    def __init__(self, message: str, *, reason: str = UNAVAILABLE) -> None:
        self.reason = reason
        super().__init__(message)
