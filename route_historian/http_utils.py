"""
HTTP Client Utilities

Provides an httpx client configured with:
- SSL certificate handling (certifi bundle)
- Proxy support
- Proper timeouts
"""

import logging
from typing import Any

import httpx

from .config import AppConfig, get_config


logger = logging.getLogger(__name__)


def create_httpx_client(
    config: AppConfig | None = None,
    timeout: float | None = None,
    **kwargs: Any
) -> httpx.AsyncClient:
    """
    Create an httpx AsyncClient configured from the application config.

    Args:
        config: Application config (uses global if not provided)
        timeout: Override default timeout
        **kwargs: Additional arguments to pass to httpx.AsyncClient
            (tests pass ``transport=httpx.MockTransport(...)``)

    Returns:
        Configured AsyncClient
    """
    if config is None:
        config = get_config()

    client_kwargs: dict[str, Any] = {
        "verify": config.ssl.get_verify_path(),
        "timeout": httpx.Timeout(timeout or 30.0, connect=10.0),
        "follow_redirects": True,
    }

    # Per-scheme proxies go through transport mounts
    proxy_dict = config.proxy.get_proxy_dict()
    if proxy_dict and "transport" not in kwargs:
        client_kwargs["mounts"] = {
            scheme: httpx.AsyncHTTPTransport(proxy=proxy_url)
            for scheme, proxy_url in proxy_dict.items()
        }
        logger.debug(f"Proxy mounts configured for {sorted(proxy_dict)}")

    client_kwargs.update(kwargs)

    return httpx.AsyncClient(**client_kwargs)
