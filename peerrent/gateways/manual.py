"""Manual payment processor for development and back-office settlement."""

import logging
from uuid import uuid4

from peerrent.gateways.base import (
    GatewayType,
    PaymentGateway,
    PaymentResult,
    RefundResult,
    TransferResult,
)

logger = logging.getLogger(__name__)


class ManualGateway(PaymentGateway):
    """Processor that records operations for admins to settle by hand.

    Every call succeeds. Results are remembered per idempotency key, so
    repeating an operation returns the original reference. The ledger
    lives in memory and is meant for local runs and tests.
    """

    def __init__(self) -> None:
        self.charges: dict[str, PaymentResult] = {}
        self.transfers: dict[str, TransferResult] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.holds: dict[str, PaymentResult] = {}
        self.captures: dict[str, PaymentResult] = {}
        self.releases: dict[str, PaymentResult] = {}
        self.transfer_log: list[dict] = []

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.MANUAL

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
        if idempotency_key not in self.charges:
            self.charges[idempotency_key] = PaymentResult(
                success=True,
                transaction_id=f"manual_ch_{uuid4().hex[:16]}",
                raw_response={"payer_id": payer_id, "amount": amount, "currency": currency},
            )
        return self.charges[idempotency_key]

    async def transfer(
        self,
        destination: str,
        amount: int,
        currency: str,
        rental_id: str,
        idempotency_key: str,
    ) -> TransferResult:
        if rental_id in self.transfers:
            logger.info(f"Manual transfer for rental {rental_id} already recorded")
            return self.transfers[rental_id]

        result = TransferResult(
            success=True,
            transfer_id=f"manual_tr_{uuid4().hex[:16]}",
            raw_response={"destination": destination, "amount": amount, "currency": currency},
        )
        self.transfers[rental_id] = result
        self.transfer_log.append(
            {"rental_id": rental_id, "destination": destination, "amount": amount}
        )
        return result

    async def refund(
        self,
        payment_reference: str,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        if idempotency_key not in self.refunds:
            self.refunds[idempotency_key] = RefundResult(
                success=True,
                refund_id=f"manual_re_{uuid4().hex[:16]}",
                raw_response={"payment_reference": payment_reference, "amount": amount},
            )
        return self.refunds[idempotency_key]

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
        if idempotency_key not in self.holds:
            self.holds[idempotency_key] = PaymentResult(
                success=True,
                transaction_id=f"manual_au_{uuid4().hex[:16]}",
                raw_response={"payer_id": payer_id, "amount": amount, "currency": currency},
            )
        return self.holds[idempotency_key]

    async def capture_hold(
        self,
        hold_reference: str,
        amount: int,
        idempotency_key: str,
    ) -> PaymentResult:
        if idempotency_key not in self.captures:
            self.captures[idempotency_key] = PaymentResult(
                success=True,
                transaction_id=hold_reference,
                raw_response={"hold_reference": hold_reference, "amount_captured": amount},
            )
        return self.captures[idempotency_key]

    async def release_hold(
        self,
        hold_reference: str,
        idempotency_key: str,
    ) -> PaymentResult:
        if idempotency_key not in self.releases:
            self.releases[idempotency_key] = PaymentResult(
                success=True,
                transaction_id=hold_reference,
                raw_response={"hold_reference": hold_reference, "status": "canceled"},
            )
        return self.releases[idempotency_key]
