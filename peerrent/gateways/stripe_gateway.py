"""Stripe payment processor adapter."""

import logging

import stripe

from peerrent.config import settings
from peerrent.gateways.base import (
    GatewayType,
    PaymentGateway,
    PaymentResult,
    RefundResult,
    TransferResult,
)

logger = logging.getLogger(__name__)

# Refund failures Stripe will not change its mind about
_FINAL_REFUND_ERRORS = {"charge_already_refunded", "amount_too_large"}


class StripeGateway(PaymentGateway):
    """Stripe implementation using PaymentIntents, Connect transfers and Refunds."""

    def __init__(self, secret_key: str | None = None):
        self.secret_key = secret_key or settings.stripe_secret_key

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

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
        """Create and confirm a Stripe PaymentIntent."""
        if not self.secret_key:
            return PaymentResult(success=False, error_message="Stripe not configured")

        params: dict = {
            "amount": amount,
            "currency": currency.lower(),
            "description": description,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {"payer_id": payer_id, **(metadata or {})},
        }
        if payment_method:
            params.update(payment_method=payment_method, confirm=True)

        try:
            intent = await stripe.PaymentIntent.create_async(
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe charge failed: {e}")
            return PaymentResult(success=False, error_message=str(e))

        return PaymentResult(
            success=intent.status in ("succeeded", "requires_capture", "processing"),
            transaction_id=intent.id,
            error_message=None if intent.status != "canceled" else "Payment was canceled",
            raw_response={"id": intent.id, "status": intent.status},
        )

    async def transfer(
        self,
        destination: str,
        amount: int,
        currency: str,
        rental_id: str,
        idempotency_key: str,
    ) -> TransferResult:
        """Create a Connect transfer grouped under the rental."""
        if not self.secret_key:
            return TransferResult(success=False, error_message="Stripe not configured")

        try:
            transfer = await stripe.Transfer.create_async(
                api_key=self.secret_key,
                amount=amount,
                currency=currency.lower(),
                destination=destination,
                transfer_group=f"rental_{rental_id}",
                metadata={"rental_id": rental_id},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe transfer for rental {rental_id} failed: {e}")
            return TransferResult(success=False, error_message=str(e))

        return TransferResult(
            success=True,
            transfer_id=transfer.id,
            raw_response={"id": transfer.id, "amount": transfer.amount},
        )

    async def refund(
        self,
        payment_reference: str,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        """Refund part or all of a PaymentIntent."""
        if not self.secret_key:
            return RefundResult(success=False, error_message="Stripe not configured")

        try:
            refund = await stripe.Refund.create_async(
                api_key=self.secret_key,
                payment_intent=payment_reference,
                amount=amount,
                reason="requested_by_customer",
                metadata={"reason": reason[:500]},
                idempotency_key=idempotency_key,
            )
        except stripe.InvalidRequestError as e:
            logger.warning(f"Stripe refund rejected: {e}")
            return RefundResult(
                success=False,
                error_message=str(e),
                retryable=e.code not in _FINAL_REFUND_ERRORS,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe refund failed: {e}")
            return RefundResult(success=False, error_message=str(e))

        return RefundResult(
            success=refund.status in ("succeeded", "pending"),
            refund_id=refund.id,
            error_message=None if refund.status != "failed" else "Refund failed",
            raw_response={"id": refund.id, "status": refund.status},
        )

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
        """Authorize a PaymentIntent with manual capture."""
        if not self.secret_key:
            return PaymentResult(success=False, error_message="Stripe not configured")

        params: dict = {
            "amount": amount,
            "currency": currency.lower(),
            "description": description,
            "capture_method": "manual",
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {"payer_id": payer_id, **(metadata or {})},
        }
        if payment_method:
            params.update(payment_method=payment_method, confirm=True)

        try:
            intent = await stripe.PaymentIntent.create_async(
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe deposit hold failed: {e}")
            return PaymentResult(success=False, error_message=str(e))

        return PaymentResult(
            success=intent.status in ("requires_capture", "requires_confirmation", "processing"),
            transaction_id=intent.id,
            error_message=None if intent.status != "canceled" else "Hold was canceled",
            raw_response={"id": intent.id, "status": intent.status},
        )

    async def capture_hold(
        self,
        hold_reference: str,
        amount: int,
        idempotency_key: str,
    ) -> PaymentResult:
        """Capture part or all of an authorized PaymentIntent."""
        if not self.secret_key:
            return PaymentResult(success=False, error_message="Stripe not configured")

        try:
            intent = await stripe.PaymentIntent.capture_async(
                hold_reference,
                api_key=self.secret_key,
                amount_to_capture=amount,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe capture of {hold_reference} failed: {e}")
            return PaymentResult(success=False, error_message=str(e))

        return PaymentResult(
            success=intent.status == "succeeded",
            transaction_id=intent.id,
            raw_response={
                "id": intent.id,
                "status": intent.status,
                "amount_received": intent.amount_received,
            },
        )

    async def release_hold(
        self,
        hold_reference: str,
        idempotency_key: str,
    ) -> PaymentResult:
        """Cancel an uncaptured PaymentIntent."""
        if not self.secret_key:
            return PaymentResult(success=False, error_message="Stripe not configured")

        try:
            intent = await stripe.PaymentIntent.cancel_async(
                hold_reference,
                api_key=self.secret_key,
                cancellation_reason="requested_by_customer",
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe release of {hold_reference} failed: {e}")
            return PaymentResult(success=False, error_message=str(e))

        return PaymentResult(
            success=intent.status == "canceled",
            transaction_id=intent.id,
            raw_response={"id": intent.id, "status": intent.status},
        )
