"""Async wrapper that runs blocking gateway calls under a timeout."""

import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

from ..config import Settings, get_settings
from ..exceptions import GatewayTimeout, GatewayUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GatewayCaller:
    """Runs adapter methods in a worker thread.

    Writes (create/capture/void) are attempted once. Status reads are
    retried with exponential backoff while the gateway is unavailable.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` once; a timeout leaves the outcome unknown."""
        name = getattr(fn, "__name__", "gateway call")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(
                f"Gateway {name} timed out after {self.settings.gateway_timeout_seconds}s"
            )
            raise GatewayTimeout(f"Gateway {name} timed out", issue="TIMEOUT") from e
        except TimeoutError as e:
            raise GatewayTimeout(str(e) or f"Gateway {name} timed out", issue="TIMEOUT") from e

    async def read(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run an idempotent read, retrying while the gateway is unavailable."""
        attempts = self.settings.status_read_attempts
        delay = self.settings.status_read_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                return await self.call(fn, *args, **kwargs)
            except GatewayUnavailable as e:
                if attempt == attempts:
                    raise
                wait = delay * (2 ** (attempt - 1))
                logger.info(
                    f"Gateway read failed ({e.code}), retry {attempt}/{attempts - 1} in {wait:.2f}s"
                )
                await asyncio.sleep(wait)
        # Only reached when no attempts are configured
        raise GatewayUnavailable("Gateway read failed")
