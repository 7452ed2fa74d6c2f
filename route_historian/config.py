"""
Central Configuration Module for Route Historian

Environment-driven settings for:
- SSL/TLS and proxy handling of provider calls
- Gemini credentials, models and voice
- Location acquisition policy (accuracy, timeout, staleness)
- Narration audio format and highlight convention
"""

import logging
import os
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import certifi


logger = logging.getLogger(__name__)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("true", "1", "yes")


@dataclass
class SSLConfig:
    """SSL/TLS configuration for HTTPS requests."""

    insecure_ssl: bool = False
    ca_bundle_path: str | None = None

    @classmethod
    def from_env(cls) -> "SSLConfig":
        """Create SSL config from environment variables."""
        config = cls(
            insecure_ssl=_env_flag("ROUTE_HISTORIAN_INSECURE_SSL"),
            ca_bundle_path=os.getenv("ROUTE_HISTORIAN_CA_BUNDLE"),
        )

        if config.insecure_ssl:
            logger.warning(
                "⚠️  INSECURE SSL MODE ENABLED - certificate verification disabled"
            )
        elif config.ca_bundle_path:
            logger.info(f"Using custom CA bundle: {config.ca_bundle_path}")

        return config

    def get_ssl_context(self) -> ssl.SSLContext | bool:
        """Get SSL context for clients that take one."""
        if self.insecure_ssl:
            return False
        return ssl.create_default_context(cafile=self.get_verify_path())

    def get_verify_path(self) -> str | bool:
        """Get verify parameter for httpx."""
        if self.insecure_ssl:
            return False

        if self.ca_bundle_path and Path(self.ca_bundle_path).exists():
            return self.ca_bundle_path

        return certifi.where()


@dataclass
class ProxyConfig:
    """Outbound proxy configuration."""

    http_proxy: str | None = None
    https_proxy: str | None = None
    no_proxy: str | None = None

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        """Create proxy config from environment variables."""
        config = cls(
            http_proxy=os.getenv("HTTP_PROXY") or os.getenv("http_proxy"),
            https_proxy=os.getenv("HTTPS_PROXY") or os.getenv("https_proxy"),
            no_proxy=os.getenv("NO_PROXY") or os.getenv("no_proxy"),
        )

        if config.is_configured:
            logger.info(f"🔗 Using proxy: HTTP={config.http_proxy}, HTTPS={config.https_proxy}")

        return config

    def get_proxy_dict(self) -> dict[str, str] | None:
        """Get per-scheme proxy mapping for httpx mounts."""
        proxies = {}

        if self.http_proxy:
            proxies["http://"] = self.http_proxy
        if self.https_proxy:
            proxies["https://"] = self.https_proxy

        return proxies or None

    @property
    def is_configured(self) -> bool:
        return bool(self.http_proxy or self.https_proxy)


@dataclass
class RetryConfig:
    """Retry configuration with exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt (0-indexed)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class GeminiConfig:
    """Gemini API settings shared by the context, narration and itinerary adapters."""

    api_key: str = ""
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    context_model: str = "gemini-2.5-flash"
    tts_model: str = "gemini-2.5-flash-preview-tts"
    voice_name: str = "Kore"
    timeout: float = 60.0
    retry: RetryConfig = field(default_factory=lambda: RetryConfig(max_attempts=3, base_delay=2.0))

    @classmethod
    def from_env(cls) -> "GeminiConfig":
        """Create Gemini config from environment variables."""
        config = cls(
            api_key=(os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY") or "").strip(),
            base_url=os.getenv("GEMINI_BASE_URL", cls.base_url),
            context_model=os.getenv("GEMINI_CONTEXT_MODEL", cls.context_model),
            tts_model=os.getenv("GEMINI_TTS_MODEL", cls.tts_model),
            voice_name=os.getenv("GEMINI_VOICE", cls.voice_name),
            timeout=float(os.getenv("GEMINI_TIMEOUT", "60.0")),
        )

        if not config.is_configured:
            logger.warning("🔑 GEMINI_API_KEY is not set")

        return config

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


@dataclass
class LocationConfig:
    """Location acquisition policy."""

    high_accuracy: bool = True
    timeout: float = 10.0  # seconds to acquire a reading
    maximum_age: float = 5.0  # seconds a cached reading may be reused
    poll_interval: float = 3.0  # seconds between readings while watching

    @classmethod
    def from_env(cls) -> "LocationConfig":
        return cls(
            high_accuracy=os.getenv("LOCATION_HIGH_ACCURACY", "true").lower() in ("true", "1", "yes"),
            timeout=float(os.getenv("LOCATION_TIMEOUT", "10.0")),
            maximum_age=float(os.getenv("LOCATION_MAXIMUM_AGE", "5.0")),
            poll_interval=float(os.getenv("LOCATION_POLL_INTERVAL", "3.0")),
        )


@dataclass
class NarrationConfig:
    """Narration audio format and highlight convention."""

    sample_rate: int = 24000
    channels: int = 1
    highlight_prefix: str = "HIGHLIGHT"
    region_hint: str = "São Paulo, Brazil"

    @classmethod
    def from_env(cls) -> "NarrationConfig":
        return cls(
            sample_rate=int(os.getenv("NARRATION_SAMPLE_RATE", "24000")),
            channels=int(os.getenv("NARRATION_CHANNELS", "1")),
            highlight_prefix=os.getenv("HIGHLIGHT_PREFIX", "HIGHLIGHT"),
            region_hint=os.getenv("REGION_HINT", "São Paulo, Brazil"),
        )


@dataclass
class AppConfig:
    """Main application configuration."""

    ssl: SSLConfig = field(default_factory=SSLConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    gemini: GeminiConfig = field(default_factory=GeminiConfig)
    location: LocationConfig = field(default_factory=LocationConfig)
    narration: NarrationConfig = field(default_factory=NarrationConfig)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """
        Create application config from environment variables.

        Environment variables:
            GEMINI_API_KEY (or API_KEY): provider credential
            GEMINI_CONTEXT_MODEL / GEMINI_TTS_MODEL / GEMINI_VOICE: model selection
            ROUTE_HISTORIAN_INSECURE_SSL / ROUTE_HISTORIAN_CA_BUNDLE: TLS settings
            HTTP_PROXY / HTTPS_PROXY: proxy settings
            LOCATION_TIMEOUT / LOCATION_MAXIMUM_AGE / LOCATION_POLL_INTERVAL: location policy
            LOG_LEVEL: logging level
        """
        return cls(
            ssl=SSLConfig.from_env(),
            proxy=ProxyConfig.from_env(),
            gemini=GeminiConfig.from_env(),
            location=LocationConfig.from_env(),
            narration=NarrationConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def apply_overrides(self, overrides: dict[str, Any]) -> "AppConfig":
        """
        Apply values from a YAML config dictionary.

        Only known keys of the ``gemini``, ``location`` and ``narration``
        sections are honoured; the API key is never read from YAML.
        """
        for section_name in ("gemini", "location", "narration"):
            section = getattr(self, section_name)
            for key, value in (overrides.get(section_name) or {}).items():
                if key == "api_key":
                    logger.warning("Ignoring api_key in config file; use GEMINI_API_KEY")
                    continue
                if hasattr(section, key):
                    setattr(section, key, value)
                else:
                    logger.warning(f"Unknown config key: {section_name}.{key}")
        if "log_level" in overrides:
            self.log_level = overrides["log_level"]
        return self

    def log_configuration(self) -> None:
        """Log current configuration summary."""
        logger.info("=" * 60)
        logger.info("Route Historian Configuration")
        logger.info("=" * 60)

        if self.ssl.insecure_ssl:
            logger.warning("SSL: ⚠️  INSECURE (verification disabled)")
        else:
            logger.info(f"SSL: ✅ Secure (using {self.ssl.get_verify_path()})")

        logger.info(f"Proxy: {'✅ Configured' if self.proxy.is_configured else '❌ Not configured'}")
        logger.info(f"Gemini key: {'✅ present' if self.gemini.is_configured else '❌ missing'}")
        logger.info(f"Context model: {self.gemini.context_model}")
        logger.info(f"TTS model: {self.gemini.tts_model} (voice {self.gemini.voice_name})")
        logger.info(
            f"Location: timeout {self.location.timeout}s, "
            f"max age {self.location.maximum_age}s"
        )

        logger.info("=" * 60)


# Global config instance (lazy loaded)
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create global application config."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def reset_config() -> None:
    """Reset global config (useful for testing)."""
    global _config
    _config = None
