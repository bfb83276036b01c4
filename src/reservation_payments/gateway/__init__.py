"""Payment gateway adapters."""

import logging
from typing import Optional

from .base import (
    GatewayAdapter,
    ChargeDescriptor,
    LineItem,
    StoredCredential,
    OrderResult,
    AuthorizationResult,
    CaptureResult,
    VaultTokenResult,
)
from .caller import GatewayCaller
from .simulator import (
    SimulatorGateway,
    SimulatorConfig,
    SimulatorScenario,
)
from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


def get_gateway(settings: Optional[Settings] = None) -> GatewayAdapter:
    """Build the configured gateway adapter.

    Args:
        settings: Settings to read ``gateway`` from. Defaults to the process settings.

    Returns:
        A GatewayAdapter instance.
    """
    settings = settings or get_settings()
    if settings.gateway == "stripe":
        from .stripe_gateway import StripeGateway
        return StripeGateway()
    if settings.gateway == "simulator":
        return SimulatorGateway()
    raise ValueError(f"Unsupported gateway: {settings.gateway}")


__all__ = [
    "GatewayAdapter",
    "ChargeDescriptor",
    "LineItem",
    "StoredCredential",
    "OrderResult",
    "AuthorizationResult",
    "CaptureResult",
    "VaultTokenResult",
    "GatewayCaller",
    "SimulatorGateway",
    "SimulatorConfig",
    "SimulatorScenario",
    "get_gateway",
]
