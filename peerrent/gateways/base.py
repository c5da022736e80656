"""Base payment processor interface.

All processor adapters must implement this interface.
Business logic should NOT live in adapters - only processor communication.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class GatewayType(str, Enum):
    """Supported payment processors."""

    STRIPE = "stripe"
    MANUAL = "manual"


@dataclass
class PaymentResult:
    """Result of a charge."""

    success: bool
    transaction_id: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None


@dataclass
class TransferResult:
    """Result of a transfer to an owner's payout account."""

    success: bool
    transfer_id: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None


@dataclass
class RefundResult:
    """Result of a refund operation.

    ``retryable`` is False when the processor definitively rejected the
    refund (e.g. the charge was already refunded).
    """

    success: bool
    refund_id: str | None = None
    error_message: str | None = None
    raw_response: dict | None = None
    retryable: bool = True


class PaymentGateway(ABC):
    """Abstract base class for payment processors."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""

    @abstractmethod
    async def charge(
        self,
        payer_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        description: str,
        payment_method: str | None = None,
        metadata: dict | None = None,
    ) -> PaymentResult:
        """Collect a payment from the renter.

        Args:
            payer_id: Renter user ID
            amount: Amount in smallest currency unit
            currency: ISO currency code
            idempotency_key: Key collapsing retries of the same charge
            description: Statement description
            payment_method: Tokenized card reference from the renter's client
            metadata: Additional metadata

        Returns:
            PaymentResult with the payment reference
        """

    @abstractmethod
    async def transfer(
        self,
        destination: str,
        amount: int,
        currency: str,
        rental_id: str,
        idempotency_key: str,
    ) -> TransferResult:
        """Move funds to an owner's payout account.

        Must be idempotent per ``rental_id``: a repeated call for the same
        rental returns the original transfer instead of sending money twice.
        """

    @abstractmethod
    async def refund(
        self,
        payment_reference: str,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        """Return part or all of a captured payment to the renter."""

    @abstractmethod
    async def hold(
        self,
        payer_id: str,
        amount: int,
        currency: str,
        idempotency_key: str,
        description: str,
        payment_method: str | None = None,
        metadata: dict | None = None,
    ) -> PaymentResult:
        """Authorize ``amount`` on the renter's card without capturing it.

        Used for security deposits. The returned ``transaction_id`` is the
        hold reference passed to :meth:`capture_hold` or :meth:`release_hold`.
        """

    @abstractmethod
    async def capture_hold(
        self,
        hold_reference: str,
        amount: int,
        idempotency_key: str,
    ) -> PaymentResult:
        """Capture ``amount`` of an authorized hold.

        Any uncaptured remainder goes back to the renter.
        """

    @abstractmethod
    async def release_hold(
        self,
        hold_reference: str,
        idempotency_key: str,
    ) -> PaymentResult:
        """Cancel an authorized hold so none of it is collected."""
