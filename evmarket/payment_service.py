"""
Payment service: payment sessions, settlement and refunds.

Checkout takes two calls. ``begin_session`` pins the cart fingerprint. ``commit_payment``
re-checks it and then, in one Redis transaction, consumes the session, records the
order and its payment, marks vehicles sold and clears the cart.
"""
import hashlib
import logging
from typing import Callable, List, Optional

from evmarket.cart_service import CartService
from evmarket.catalog import CatalogClient
from evmarket.checksum import fingerprint
from evmarket.config import Config
from evmarket.exceptions import (
    ConcurrentModificationError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError
)
from evmarket.models import (
    ItemKind,
    OrderStatus,
    Payment,
    PaymentRequest,
    PaymentSession,
    PaymentStatus,
    VehicleStatus
)
from evmarket.order_service import OrderService
from evmarket.redis_client import RedisClient, get_redis_client
from evmarket.session_store import PaymentSessionStore

logger = logging.getLogger(__name__)

# Takes the 1-indexed sequence number of the payment being recorded
ApprovalPolicy = Callable[[int], bool]

DECLINE_REASON = "Credit Card Authorization Failed"
PAYMENTS_COUNT_KEY = "payments:count"


def modulo_approval_policy(
    modulus: Optional[int] = None,
    declined_remainder: Optional[int] = None
) -> ApprovalPolicy:
    """
    Simulated gateway: deny when sequence_number % modulus == declined_remainder.

    sequence_number is 1-indexed (payments recorded so far + 1), so with 3 and 2 the
    2nd, 5th, 8th ... commits are denied. A zero-based count with the same remainder
    would deny the 3rd, 6th ... instead; use declined_remainder=0 for that schedule.
    """
    modulus = modulus or Config.PAYMENT_DECLINE_MODULUS
    if declined_remainder is None:
        declined_remainder = Config.PAYMENT_DECLINE_REMAINDER

    def _policy(sequence_number: int) -> bool:
        return sequence_number % modulus != declined_remainder

    return _policy


class PaymentService:
    """Service for the payment state machine"""

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        catalog: Optional[CatalogClient] = None,
        cart_service: Optional[CartService] = None,
        order_service: Optional[OrderService] = None,
        sessions: Optional[PaymentSessionStore] = None,
        approval_policy: Optional[ApprovalPolicy] = None
    ):
        self.redis = redis_client or get_redis_client()
        self.catalog = catalog or CatalogClient(self.redis)
        self.cart_service = cart_service or CartService(self.redis, self.catalog)
        self.order_service = order_service or OrderService(self.redis, self.catalog, self.cart_service)
        self.sessions = sessions or PaymentSessionStore(self.redis)
        self.approval_policy = approval_policy or modulo_approval_policy()

    @staticmethod
    def payment_key(payment_id: str) -> str:
        return f"payment:{payment_id}"

    @staticmethod
    def order_payment_key(order_id: str) -> str:
        return f"payment:order:{order_id}"

    @staticmethod
    def user_payments_key(user_id: str) -> str:
        return f"payments:user:{user_id}"

    def _hash_user_id(self, user_id: str) -> str:
        """Hash user ID for logging (no PII)"""
        return hashlib.sha256(user_id.encode()).hexdigest()[:8]

    def load(self, payment_id: str, conn=None) -> Optional[Payment]:
        raw = (conn or self.redis).get(self.payment_key(payment_id))
        if raw is None:
            return None
        return Payment.model_validate_json(raw)

    def save(self, payment: Payment, pipe, is_new: bool = False) -> None:
        """Queue the payment write on a pipeline in MULTI mode"""
        pipe.set(self.payment_key(payment.id), payment.model_dump_json())
        if is_new:
            pipe.set(self.order_payment_key(payment.order_id), payment.id)
            pipe.rpush(self.user_payments_key(payment.user_id), payment.id)
            pipe.incr(PAYMENTS_COUNT_KEY)

    def begin_session(self, user_id: str) -> PaymentSession:
        """Pin the current cart for payment, replacing any earlier session"""
        cart = self.cart_service.load(user_id)
        if cart is None or cart.is_empty:
            raise InvalidStateError("Cannot create payment session for empty cart")

        session = PaymentSession(cart_id=cart.id, cart_checksum=fingerprint(cart))
        self.sessions.put(user_id, session)
        logger.info(f"Payment session opened for user {self._hash_user_id(user_id)}")
        return session

    def commit_payment(self, user_id: str, details: PaymentRequest) -> Payment:
        """
        Settle the pinned cart.

        Raises:
            InvalidRequestError: No open payment session
            InvalidStateError: Cart is empty, or a vehicle in it is no longer available
            ConcurrentModificationError: Cart changed since the session was opened
            TransactionConflictError: Other commits kept racing this one

        A denied payment is a normal outcome: the order is canceled, the cart kept.
        """
        def _commit(pipe):
            session = self.sessions.get(user_id, conn=pipe)
            if session is None:
                raise InvalidRequestError("No payment session found for user")

            cart = self.cart_service.load(user_id, conn=pipe)
            if cart is None or cart.is_empty:
                raise InvalidStateError("Cannot process payment for empty cart")

            if cart.id != session.cart_id or fingerprint(cart) != session.cart_checksum:
                raise ConcurrentModificationError(
                    "Cart has been modified since payment session was created"
                )

            vehicle_keys = [
                self.catalog.vehicle_key(item.referenced_id)
                for item in cart.items if item.kind == ItemKind.VEHICLE
            ]
            if vehicle_keys:
                pipe.watch(*vehicle_keys)

            order = self.order_service.build_order_from_cart(cart, conn=pipe)
            sequence_number = int(pipe.get(PAYMENTS_COUNT_KEY) or 0) + 1
            approved = self.approval_policy(sequence_number)

            payment = Payment(
                user_id=user_id,
                order_id=order.id,
                amount=order.total_price,
                payment_method=details.payment_method,
                billing_address=details.address
            )
            if approved:
                payment = payment.transition(PaymentStatus.APPROVED)
                order = order.transition(OrderStatus.PAID)
            else:
                payment = payment.transition(PaymentStatus.DENIED, failure_reason=DECLINE_REASON)
                order = order.transition(OrderStatus.CANCELED)

            pipe.multi()
            # Consume the session before anything else
            self.sessions.delete(user_id, conn=pipe)
            self.order_service.save(order, pipe, is_new=True)
            self.save(payment, pipe, is_new=True)
            if approved:
                for vehicle_id in order.vehicle_ids:
                    self.catalog.set_vehicle_status(vehicle_id, VehicleStatus.SOLD, conn=pipe)
                self.cart_service.save(cart.cleared(), conn=pipe)

            return payment, sequence_number

        payment, sequence_number = self.redis.transaction(
            _commit,
            self.sessions.session_key(user_id),
            self.cart_service.cart_key(user_id),
            PAYMENTS_COUNT_KEY
        )

        if payment.status == PaymentStatus.APPROVED:
            logger.info(f"Payment approved for order: {payment.order_id} (sequence {sequence_number})")
        else:
            logger.info(f"Payment denied for order: {payment.order_id} (sequence {sequence_number})")
        return payment

    def cancel_payment(self, order_id: str) -> Payment:
        """
        Refund an approved payment: payment REFUNDED, order CANCELED, vehicles AVAILABLE.
        Any other payment status is left as is.
        """
        def _refund(pipe):
            payment_id = pipe.get(self.order_payment_key(order_id))
            if payment_id is None:
                raise NotFoundError("Payment", order_id)

            pipe.watch(self.payment_key(payment_id))
            payment = self.load(payment_id, conn=pipe)
            if payment is None:
                raise NotFoundError("Payment", order_id)
            if payment.status != PaymentStatus.APPROVED:
                return payment, False

            order = self.order_service.load(order_id, conn=pipe)
            if order is None:
                raise NotFoundError("Order", order_id)
            vehicle_keys = [self.catalog.vehicle_key(vehicle_id) for vehicle_id in order.vehicle_ids]
            if vehicle_keys:
                pipe.watch(*vehicle_keys)

            refunded = payment.transition(PaymentStatus.REFUNDED)
            canceled = order.transition(OrderStatus.CANCELED)

            pipe.multi()
            self.save(refunded, pipe)
            self.order_service.save(canceled, pipe)
            for vehicle_id in canceled.vehicle_ids:
                self.catalog.set_vehicle_status(vehicle_id, VehicleStatus.AVAILABLE, conn=pipe)
            return refunded, True

        payment, refunded = self.redis.transaction(
            _refund,
            self.order_payment_key(order_id),
            self.order_service.order_key(order_id)
        )

        if refunded:
            logger.info(f"Payment refunded for order: {order_id}")
        else:
            logger.info(f"Refund ignored for order {order_id}: payment is {payment.status.value}")
        return payment

    def get_status(self, order_id: str) -> Payment:
        payment_id = self.redis.get(self.order_payment_key(order_id))
        payment = self.load(payment_id) if payment_id is not None else None
        if payment is None:
            raise NotFoundError("Payment", order_id)
        return payment

    def list_by_user(self, user_id: str) -> List[Payment]:
        payment_ids = self.redis.lrange(self.user_payments_key(user_id))
        raw_payments = self.redis.mget([self.payment_key(payment_id) for payment_id in payment_ids])
        return [Payment.model_validate_json(raw) for raw in raw_payments if raw is not None]
