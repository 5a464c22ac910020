import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pawmarket.auth import Actor
from pawmarket.errors import ConflictError, ForbiddenError, NotFoundError, UpstreamError, ValidationError
from pawmarket.models import (
    CareBookingPaymentInit,
    CarePaymentInit,
    EsewaInitiateRequest,
    OrderPaymentInit,
    Payment,
    ServicePaymentInit,
)
from pawmarket.services.broadcaster import EventFanout
from pawmarket.services.gateway import (
    ESEWA_SUCCESS_STATUS,
    KHALTI_SUCCESS_STATUS,
    EsewaSigner,
    KhaltiClient,
    npr_to_paisa,
    parse_paisa,
)
from pawmarket.services.record_store import RecordStore, new_id, utc_now
from pawmarket.services.subscriptions import SubscriptionService, plan_price

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Payment was not completed. Please try again."


def failure_message(reason: Optional[str]) -> str:
    if not reason or not isinstance(reason, str):
        return GENERIC_FAILURE
    text = reason.lower().strip()
    if "cancel" in text:
        return "Payment was cancelled. You can try again when ready."
    if "expire" in text or "timeout" in text:
        return "Payment link expired. Please initiate a new payment."
    if "insufficient" in text or "balance" in text:
        return "Insufficient balance. Please add funds to your wallet and try again."
    if "decline" in text or "reject" in text:
        return "Payment was declined. Please try another payment method."
    if "fail" in text or "error" in text:
        return "Payment failed. Please try again or use another payment method."
    return GENERIC_FAILURE


@dataclass
class PaymentTarget:
    target_type: str
    target_id: Optional[str]
    amount: float
    name: str
    meta: Dict[str, Any]


@dataclass
class VerificationResult:
    payment: Payment
    completed: bool
    already_processed: bool = False
    message: str = ""

    def as_data(self) -> Dict[str, Any]:
        return {
            "paymentId": self.payment.id,
            "status": self.payment.status,
            "targetType": self.payment.target_type,
            "targetId": self.payment.target_id,
            "alreadyProcessed": self.already_processed,
        }


class PaymentReconciler:
    def __init__(
        self,
        store: RecordStore,
        gateway: KhaltiClient,
        esewa: EsewaSigner,
        subscriptions: SubscriptionService,
        fanout: EventFanout,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.esewa = esewa
        self.subscriptions = subscriptions
        self.fanout = fanout
        self.clock = clock

    # Initiation

    @staticmethod
    def _check_payable(owner_id: str, actor: Actor, payment_status: str, payment_method: str = "online") -> None:
        if owner_id != actor.user_id:
            raise ForbiddenError("You can only pay for your own records")
        if payment_method == "cash_on_delivery":
            raise ConflictError("This record is set to cash on delivery")
        if payment_status == "paid":
            raise ConflictError("This record has already been paid")

    def _resolve_target(self, conn: Any, actor: Actor, body: Any) -> PaymentTarget:
        if isinstance(body, ServicePaymentInit):
            request = self.store.get_service_request(conn, body.service_request_id)
            self._check_payable(request.user_id, actor, request.payment_status, request.payment_method)
            if request.status == "cancelled":
                raise ConflictError("Cancelled requests cannot be paid")
            return PaymentTarget("service", request.id, body.amount, f"Service Request {request.id}", {})
        if isinstance(body, CarePaymentInit):
            care = self.store.get_care_request(conn, body.care_request_id)
            self._check_payable(care.user_id, actor, care.payment_status)
            return PaymentTarget("care", care.id, body.amount, f"Care Request {care.id}", {})
        if isinstance(body, CareBookingPaymentInit):
            booking = self.store.get_care_booking(conn, body.care_booking_id)
            self._check_payable(booking.user_id, actor, booking.payment_status, booking.payment_method)
            if booking.status in {"rejected", "cancelled"}:
                raise ConflictError(f"Booking is {booking.status}")
            return PaymentTarget("care_booking", booking.id, booking.total_amount, f"Care Booking {booking.id}", {})
        if isinstance(body, OrderPaymentInit):
            order = self.store.get_order(conn, body.order_id)
            self._check_payable(order.user_id, actor, order.payment_status, order.payment_method)
            return PaymentTarget("order", order.id, order.total_amount, f"Order {order.id}", {})
        raise ValidationError("Unsupported payment type")

    def _start_khalti(self, actor: Actor, target: PaymentTarget) -> Dict[str, Any]:
        with self.store.transaction() as conn:
            payment = self.store.insert_payment(
                conn,
                user_id=actor.user_id,
                target_type=target.target_type,
                target_id=target.target_id,
                amount=target.amount,
                gateway="khalti",
                target_meta=target.meta,
            )
        try:
            response = self.gateway.initiate(
                amount_npr=target.amount,
                purchase_order_id=payment.id,
                purchase_order_name=target.name,
            )
        except UpstreamError as exc:
            with self.store.transaction() as conn:
                self.store.update_payment(
                    conn, payment.id, status="failed", raw_gateway_payload={"error": str(exc)}
                )
            raise
        with self.store.transaction() as conn:
            payment = self.store.update_payment(
                conn,
                payment.id,
                status="pending",
                gateway_transaction_id=str(response["pidx"]),
                raw_gateway_payload=response,
            )
        logger.info("Khalti payment %s initiated for %s %s", payment.id, target.target_type, target.target_id)
        return {
            "paymentId": payment.id,
            "pidx": payment.gateway_transaction_id,
            "paymentUrl": response.get("payment_url"),
            "amount": payment.amount,
            "amountPaisa": npr_to_paisa(payment.amount),
            "targetType": payment.target_type,
        }

    def initiate(self, actor: Actor, body: Any) -> Dict[str, Any]:
        with self.store.transaction() as conn:
            target = self._resolve_target(conn, actor, body)
        return self._start_khalti(actor, target)

    def initiate_subscription(self, actor: Actor, plan: str, billing_cycle: str) -> Dict[str, Any]:
        if not actor.can_manage_listings():
            raise ForbiddenError("Only providers can subscribe")
        amount = plan_price(plan, billing_cycle)
        target = PaymentTarget(
            "subscription",
            None,
            amount,
            f"{plan.title()} plan ({billing_cycle})",
            {"plan": plan, "billingCycle": billing_cycle, "providerId": actor.user_id},
        )
        return self._start_khalti(actor, target)

    def esewa_initiate(self, actor: Actor, body: EsewaInitiateRequest) -> Dict[str, Any]:
        transaction_uuid = new_id("esw")
        with self.store.transaction() as conn:
            target = self._resolve_target(
                conn,
                actor,
                ServicePaymentInit(type="service", service_request_id=body.service_request_id, amount=body.amount),
            )
            payment = self.store.insert_payment(
                conn,
                user_id=actor.user_id,
                target_type=target.target_type,
                target_id=target.target_id,
                amount=round(target.amount, 2),
                gateway="esewa",
                status="pending",
                gateway_transaction_id=transaction_uuid,
            )
        return {"paymentId": payment.id, **self.esewa.form_payload(payment.amount, transaction_uuid)}

    # Reconciliation

    def _load_for_verify(self, transaction_ref: str, actor: Optional[Actor]) -> Payment:
        with self.store.transaction() as conn:
            payment = self.store.find_payment_by_transaction(conn, transaction_ref)
        if payment is None:
            raise NotFoundError("Payment not found")
        if actor is not None and payment.user_id != actor.user_id and not actor.is_admin:
            raise ForbiddenError("You cannot verify this payment")
        return payment

    def _apply_completion(self, conn: Any, payment: Payment, raw: Dict[str, Any]) -> Payment:
        completed = self.store.update_payment(conn, payment.id, status="completed", raw_gateway_payload=raw)
        if payment.target_type == "service":
            self.store.update_service_request(
                conn, str(payment.target_id), payment_status="paid", payment_gateway=payment.gateway
            )
        elif payment.target_type == "care":
            self.store.update_care_request(conn, str(payment.target_id), payment_status="paid", status="pending_review")
        elif payment.target_type == "care_booking":
            booking = self.store.get_care_booking(conn, str(payment.target_id))
            fields: Dict[str, Any] = {"payment_status": "paid"}
            if booking.status == "pending":
                fields["status"] = "paid"
            self.store.update_care_booking(conn, booking.id, **fields)
        elif payment.target_type == "order":
            self.store.update_order(conn, str(payment.target_id), payment_status="paid")
        elif payment.target_type == "subscription":
            meta = payment.target_meta
            self.subscriptions.activate(
                conn,
                provider_id=str(meta.get("providerId") or payment.user_id),
                plan=str(meta.get("plan")),
                billing_cycle=str(meta.get("billingCycle")),
                amount_paid=payment.amount,
                transaction_ref=str(payment.gateway_transaction_id),
            )
        return completed

    def _complete(self, payment: Payment, raw: Dict[str, Any]) -> VerificationResult:
        with self.store.transaction() as conn:
            current = self.store.get_payment(conn, payment.id)
            if current.status == "completed":
                return VerificationResult(current, True, already_processed=True, message="Payment already completed")
            completed = self._apply_completion(conn, current, raw)
        logger.info("Payment %s completed for %s %s", completed.id, completed.target_type, completed.target_id)
        self._announce(completed)
        return VerificationResult(completed, True, message="Payment completed")

    def _fail(self, payment: Payment, raw: Dict[str, Any], reason: Optional[str]) -> VerificationResult:
        with self.store.transaction() as conn:
            current = self.store.get_payment(conn, payment.id)
            if current.status == "completed":
                return VerificationResult(current, True, already_processed=True, message="Payment already completed")
            failed = self.store.update_payment(conn, payment.id, status="failed", raw_gateway_payload=raw)
        logger.warning("Payment %s not completed: %s", failed.id, reason)
        return VerificationResult(failed, False, message=failure_message(reason))

    def _announce(self, payment: Payment) -> None:
        self.fanout.notify(
            payment.user_id,
            "Payment received",
            f"Your payment of NPR {payment.amount:.2f} was successful.",
            type="subscription" if payment.target_type == "subscription" else "payment",
            reference=payment.target_id or payment.id,
        )
        if payment.target_type == "service" and payment.target_id:
            self.fanout.broadcast(
                [f"request:{payment.target_id}", f"user:{payment.user_id}"],
                "payment_update",
                {"requestId": payment.target_id, "paymentStatus": "paid", "paymentGateway": payment.gateway},
            )

    def verify(self, transaction_ref: str, actor: Optional[Actor] = None) -> VerificationResult:
        """Ask the gateway for the outcome of a Khalti payment and reconcile it.

        Re-verifying a completed payment returns success without another
        gateway call. A transport failure or a lookup without a usable amount
        leaves the payment pending.
        """
        payment = self._load_for_verify(transaction_ref, actor)
        if payment.status == "completed":
            return VerificationResult(payment, True, already_processed=True, message="Payment already completed")
        if payment.gateway != "khalti":
            raise ValidationError("Only Khalti payments can be verified by pidx")
        lookup = self.gateway.lookup(transaction_ref)
        status = str(lookup.get("status") or "")
        if status != KHALTI_SUCCESS_STATUS:
            return self._fail(payment, lookup, status)
        reported = parse_paisa(lookup.get("total_amount"))
        if reported is None:
            logger.error("Payment %s lookup has no usable amount: %r", payment.id, lookup.get("total_amount"))
            raise UpstreamError("Payment gateway lookup response has no usable amount")
        if reported != npr_to_paisa(payment.amount):
            logger.error("Payment %s amount mismatch: gateway %s, recorded %s", payment.id, reported, payment.amount)
            return self._fail(payment, lookup, "Amount mismatch error")
        return self._complete(payment, lookup)

    def esewa_verify(self, data: str, signature: str) -> VerificationResult:
        decoded = self.esewa.decode_callback(data, signature)
        if str(decoded.get("product_code", "")) != self.esewa.product_code:
            raise ValidationError("Unexpected product code")
        payment = self._load_for_verify(str(decoded.get("transaction_uuid", "")), None)
        if payment.status == "completed":
            return VerificationResult(payment, True, already_processed=True, message="Payment already completed")
        try:
            reported = round(float(str(decoded.get("total_amount", "")).replace(",", "")), 2)
        except ValueError:
            raise ValidationError("Invalid amount in callback") from None
        if reported != round(payment.amount, 2):
            logger.error("eSewa payment %s amount mismatch: callback %s, recorded %s", payment.id, reported, payment.amount)
            raise ValidationError("Payment amount does not match")
        status = str(decoded.get("status", ""))
        if status != ESEWA_SUCCESS_STATUS:
            return self._fail(payment, decoded, status)
        return self._complete(payment, decoded)

    def my_payments(self, actor: Actor) -> List[Payment]:
        with self.store.transaction() as conn:
            return self.store.list_payments(conn, actor.user_id)
