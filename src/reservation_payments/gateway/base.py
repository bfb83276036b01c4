from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

# Canonical models. Amounts are minor units.

class LineItem(BaseModel):
    name: str
    quantity: int = 1
    unit_amount: int
    sku: Optional[str] = None

class StoredCredential(BaseModel):
    """Marks a charge as merchant-initiated against a stored instrument."""
    payment_initiator: str = "MERCHANT"
    payment_type: str = "UNSCHEDULED"
    usage: str = "SUBSEQUENT"
    previous_transaction_ref: Optional[str] = None

class ChargeDescriptor(BaseModel):
    amount: int
    currency: str
    invoice_ref: str
    custom_ref: Optional[str] = None
    description: Optional[str] = None
    soft_descriptor: Optional[str] = None
    items: List[LineItem] = Field(default_factory=list)
    vault_token_ref: Optional[str] = None
    stored_credential: Optional[StoredCredential] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

class CaptureResult(BaseModel):
    capture_ref: str
    status: str  # COMPLETED|PENDING|DECLINED|FAILED
    amount: int
    currency: str
    order_ref: Optional[str] = None
    invoice_ref: Optional[str] = None
    network_ref: Optional[str] = None
    final_capture: bool = True
    raw_provider_response: Optional[Dict[str, Any]] = None

class AuthorizationResult(BaseModel):
    auth_ref: str
    status: str  # CREATED|AUTHORIZED|PENDING|PARTIALLY_CAPTURED|CAPTURED|VOIDED|EXPIRED|DENIED
    amount: int
    currency: str
    order_ref: Optional[str] = None
    expires_at: Optional[datetime] = None
    network_ref: Optional[str] = None
    raw_provider_response: Optional[Dict[str, Any]] = None

class OrderResult(BaseModel):
    order_ref: str
    status: str  # CREATED|PAYER_ACTION_REQUIRED|APPROVED|COMPLETED|VOIDED
    amount: int
    currency: str
    invoice_ref: Optional[str] = None
    captures: List[CaptureResult] = Field(default_factory=list)
    authorizations: List[AuthorizationResult] = Field(default_factory=list)
    approve_url: Optional[str] = None
    raw_provider_response: Optional[Dict[str, Any]] = None

    def find_capture(
        self,
        invoice_ref: Optional[str] = None,
        completed_only: bool = True,
    ) -> Optional[CaptureResult]:
        """Return the first capture, optionally COMPLETED only and matching an invoice ref."""
        for capture in self.captures:
            if completed_only and capture.status != "COMPLETED":
                continue
            if invoice_ref is not None and capture.invoice_ref != invoice_ref:
                continue
            return capture
        return None

class VaultTokenResult(BaseModel):
    gateway_token_ref: str
    owner_ref: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None
    expiry: Optional[str] = None  # YYYY-MM


class GatewayAdapter(ABC):
    """
    Minimal gateway interface. Calls are blocking; the service layer runs
    them in a worker thread under a timeout. Implementations translate
    provider failures into ``reservation_payments.exceptions.GatewayError``
    subclasses and never return partial results.
    """

    name = "gateway"

    @abstractmethod
    def create_order(
        self,
        descriptor: ChargeDescriptor,
        idempotency_key: str,
        intent: str = "CAPTURE",
    ) -> OrderResult:
        """
        Create an order. With ``intent="CAPTURE"`` and a vault token the
        order is charged immediately (merchant-initiated). With
        ``intent="AUTHORIZE"`` the order waits for ``authorize``. Without a
        vault token the guest has to approve the order first.
        """
        raise NotImplementedError

    @abstractmethod
    def authorize(self, order_ref: str) -> AuthorizationResult:
        raise NotImplementedError

    @abstractmethod
    def capture(
        self,
        ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        invoice_ref: Optional[str] = None,
        final_capture: bool = False,
    ) -> CaptureResult:
        """
        Capture against an authorization ref or an approved order ref.
        """
        raise NotImplementedError

    @abstractmethod
    def void(self, auth_ref: str) -> AuthorizationResult:
        raise NotImplementedError

    @abstractmethod
    def exchange_vault_setup_token(self, setup_token: str) -> VaultTokenResult:
        raise NotImplementedError

    @abstractmethod
    def get_order(self, order_ref: str) -> OrderResult:
        """Idempotent status read."""
        raise NotImplementedError

    @abstractmethod
    def find_order_by_invoice(self, invoice_ref: str) -> Optional[OrderResult]:
        """Look an order up by invoice ref when the create call's response was lost."""
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name}
