from decimal import Decimal

import pytest

from evmarket.config import Config
from evmarket.exceptions import (
    ConcurrentModificationError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    TransactionConflictError
)
from evmarket.models import OrderStatus, PaymentSession, PaymentStatus, VehicleStatus
from evmarket.payment_service import DECLINE_REASON, PAYMENTS_COUNT_KEY, modulo_approval_policy
from evmarket.session_store import PaymentSessionStore


def checkout(payment_service, user_id, details):
    payment_service.begin_session(user_id)
    return payment_service.commit_payment(user_id, details)


def test_modulo_policy_sequence():
    policy = modulo_approval_policy(3, 2)
    assert [policy(n) for n in range(1, 7)] == [True, False, True, True, False, True]


def test_begin_session_requires_items(payment_service, cart_service):
    with pytest.raises(InvalidStateError):
        payment_service.begin_session("u1")

    cart_service.get_cart("u1")
    with pytest.raises(InvalidStateError):
        payment_service.begin_session("u1")
    assert payment_service.sessions.get("u1") is None


def test_session_pins_cart_and_expires(payment_service, cart_service, redis_client):
    cart = cart_service.add_item("u1", "VEHICLE", "V1")
    session = payment_service.begin_session("u1")
    assert session.cart_id == cart.id
    assert len(session.cart_checksum) == 64

    ttl = redis_client.client.ttl(payment_service.sessions.session_key("u1"))
    assert 0 < ttl <= Config.PAYMENT_SESSION_TTL_SECONDS


def test_commit_without_session(payment_service, cart_service, payment_details):
    cart_service.add_item("u1", "VEHICLE", "V1")
    with pytest.raises(InvalidRequestError):
        payment_service.commit_payment("u1", payment_details)


def test_approved_checkout(payment_service, cart_service, order_service, catalog, payment_details):
    cart_service.add_item("u1", "VEHICLE", "V1")

    payment = checkout(payment_service, "u1", payment_details)

    assert payment.status == PaymentStatus.APPROVED
    assert payment.amount == Decimal("50000")
    assert payment.billing_address == "1 Main St, Toronto"
    assert payment.failure_reason is None

    order = order_service.get_order(payment.order_id)
    assert order.status == OrderStatus.PAID
    assert order.total_price == Decimal("50000")
    assert catalog.get_vehicle("V1").status == VehicleStatus.SOLD
    assert cart_service.get_cart("u1").is_empty
    assert payment_service.sessions.get("u1") is None
    assert payment_service.get_status(order.id) == payment
    assert payment_service.list_by_user("u1") == [payment]


def test_card_data_is_not_persisted(payment_service, cart_service, redis_client, payment_details):
    cart_service.add_item("u1", "ACCESSORY", "A1")
    payment = checkout(payment_service, "u1", payment_details)
    raw = redis_client.get(payment_service.payment_key(payment.id))
    for field in ("card_number", "cvv", "expiry_date", "card_holder_name"):
        assert field not in raw


def test_denied_checkout_keeps_cart_and_vehicle(
    payment_service_factory, catalog, cart_service, order_service, payment_details
):
    payments = payment_service_factory(policy=lambda sequence: False)
    cart_service.add_item("u1", "VEHICLE", "V1")

    payment = checkout(payments, "u1", payment_details)

    assert payment.status == PaymentStatus.DENIED
    assert payment.failure_reason == DECLINE_REASON
    assert order_service.get_order(payment.order_id).status == OrderStatus.CANCELED
    assert catalog.get_vehicle("V1").status == VehicleStatus.AVAILABLE
    assert cart_service.get_cart("u1").total_items == 1
    assert payments.sessions.get("u1") is None


def test_approval_sequence_over_five_commits(payment_service, cart_service, payment_details):
    statuses = []
    for n in range(5):
        user_id = f"buyer-{n}"
        cart_service.add_item(user_id, "ACCESSORY", "A1")
        statuses.append(checkout(payment_service, user_id, payment_details).status)

    assert statuses == [
        PaymentStatus.APPROVED,
        PaymentStatus.DENIED,
        PaymentStatus.APPROVED,
        PaymentStatus.APPROVED,
        PaymentStatus.DENIED,
    ]
    assert payment_service.redis.get(PAYMENTS_COUNT_KEY) == "5"


def test_policy_receives_sequence_numbers(payment_service_factory, cart_service, payment_details):
    seen = []

    def record(sequence_number):
        seen.append(sequence_number)
        return True

    payments = payment_service_factory(policy=record)
    for user_id in ("a", "b", "c"):
        cart_service.add_item(user_id, "ACCESSORY", "A2")
        checkout(payments, user_id, payment_details)

    assert seen == [1, 2, 3]


def test_cart_change_after_session_is_detected(
    payment_service, cart_service, order_service, redis_client, payment_details
):
    cart_service.add_item("u1", "VEHICLE", "V1")
    payment_service.begin_session("u1")
    cart_service.add_item("u1", "ACCESSORY", "A1")

    with pytest.raises(ConcurrentModificationError):
        payment_service.commit_payment("u1", payment_details)

    assert order_service.list_orders("u1") == []
    assert payment_service.list_by_user("u1") == []
    assert redis_client.get(PAYMENTS_COUNT_KEY) is None


def test_cart_change_during_commit_is_detected(
    payment_service_factory, catalog, cart_service, payment_details
):
    def meddle(sequence_number):
        # Another request edits the cart after the fingerprint check
        cart_service.add_item("u1", "ACCESSORY", "A1")
        return True

    payments = payment_service_factory(policy=meddle)
    cart_service.add_item("u1", "VEHICLE", "V1")
    payments.begin_session("u1")

    with pytest.raises(ConcurrentModificationError):
        payments.commit_payment("u1", payment_details)

    assert payments.list_by_user("u1") == []
    assert catalog.get_vehicle("V1").status == VehicleStatus.AVAILABLE


def test_rebegin_pins_latest_cart(payment_service, cart_service, payment_details):
    cart_service.add_item("u1", "VEHICLE", "V1")
    payment_service.begin_session("u1")
    cart_service.add_item("u1", "ACCESSORY", "A1", 2)
    payment_service.begin_session("u1")

    payment = payment_service.commit_payment("u1", payment_details)
    assert payment.amount == Decimal("51300")


def test_session_is_single_use(payment_service, cart_service, payment_details):
    cart_service.add_item("u1", "ACCESSORY", "A1")
    checkout(payment_service, "u1", payment_details)

    with pytest.raises(InvalidRequestError):
        payment_service.commit_payment("u1", payment_details)
    assert len(payment_service.list_by_user("u1")) == 1


def test_one_payment_per_order(payment_service, cart_service, redis_client, payment_details):
    cart_service.add_item("u1", "ACCESSORY", "A1")
    payment = checkout(payment_service, "u1", payment_details)
    assert redis_client.get(payment_service.order_payment_key(payment.order_id)) == payment.id


def test_two_buyers_one_vehicle(payment_service, cart_service, catalog, payment_details):
    cart_service.add_item("alice", "VEHICLE", "V2")
    cart_service.add_item("bob", "VEHICLE", "V2")
    payment_service.begin_session("alice")
    payment_service.begin_session("bob")

    payment = payment_service.commit_payment("alice", payment_details)
    assert payment.status == PaymentStatus.APPROVED

    with pytest.raises(InvalidStateError):
        payment_service.commit_payment("bob", payment_details)
    assert payment_service.list_by_user("bob") == []
    assert catalog.get_vehicle("V2").status == VehicleStatus.SOLD


def test_refund_restores_vehicle(payment_service, cart_service, order_service, catalog, payment_details):
    cart_service.add_item("u1", "VEHICLE", "V1")
    payment = checkout(payment_service, "u1", payment_details)

    refunded = payment_service.cancel_payment(payment.order_id)

    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.id == payment.id
    assert order_service.get_order(payment.order_id).status == OrderStatus.CANCELED
    assert catalog.get_vehicle("V1").status == VehicleStatus.AVAILABLE
    assert payment_service.get_status(payment.order_id).status == PaymentStatus.REFUNDED


def test_refund_is_idempotent(payment_service_factory, cart_service, catalog, payment_details):
    payments = payment_service_factory(policy=lambda sequence: True)
    cart_service.add_item("u1", "VEHICLE", "V1")
    payment = checkout(payments, "u1", payment_details)
    payments.cancel_payment(payment.order_id)

    # Vehicle relisted and sold again must not be touched by a repeated refund
    cart_service.add_item("u2", "VEHICLE", "V1")
    checkout(payments, "u2", payment_details)
    assert catalog.get_vehicle("V1").status == VehicleStatus.SOLD

    again = payments.cancel_payment(payment.order_id)
    assert again.status == PaymentStatus.REFUNDED
    assert catalog.get_vehicle("V1").status == VehicleStatus.SOLD


def test_refund_of_denied_payment_is_noop(
    payment_service_factory, cart_service, order_service, payment_details
):
    payments = payment_service_factory(policy=lambda sequence: False)
    cart_service.add_item("u1", "VEHICLE", "V1")
    payment = checkout(payments, "u1", payment_details)

    result = payments.cancel_payment(payment.order_id)
    assert result == payment
    assert order_service.get_order(payment.order_id).status == OrderStatus.CANCELED


def test_lookups_for_unknown_orders(payment_service):
    with pytest.raises(NotFoundError):
        payment_service.get_status("missing")
    with pytest.raises(NotFoundError):
        payment_service.cancel_payment("missing")
    assert payment_service.list_by_user("nobody") == []


def test_placed_order_has_no_payment(payment_service, order_service, cart_service):
    cart_service.add_item("u1", "ACCESSORY", "A1")
    order = order_service.create_order_from_cart("u1")
    with pytest.raises(NotFoundError):
        payment_service.get_status(order.id)


def test_counter_contention_is_not_a_cart_change(
    payment_service_factory, cart_service, redis_client, payment_details
):
    def busy_gateway(sequence_number):
        # Another user's commit lands before ours reaches EXEC, every time
        redis_client.client.incr(PAYMENTS_COUNT_KEY)
        return True

    payments = payment_service_factory(policy=busy_gateway)
    cart = cart_service.add_item("u1", "VEHICLE", "V1")
    payments.begin_session("u1")

    with pytest.raises(TransactionConflictError):
        payments.commit_payment("u1", payment_details)

    assert cart_service.get_cart("u1") == cart
    assert payments.list_by_user("u1") == []
    # The session is still usable once contention clears
    assert payments.sessions.get("u1") is not None


def test_refund_retries_when_vehicle_changes_mid_transaction(
    payment_service, cart_service, order_service, catalog, redis_client, payment_details, monkeypatch
):
    cart_service.add_item("u1", "VEHICLE", "V1")
    payment = checkout(payment_service, "u1", payment_details)

    saves = []
    queue_save = order_service.save

    def save_with_interference(order, pipe, is_new=False):
        saves.append(order.id)
        if len(saves) == 1:
            redis_client.client.hset(catalog.vehicle_key("V1"), mapping={"name": "Model 3 LR"})
        queue_save(order, pipe, is_new=is_new)

    monkeypatch.setattr(order_service, "save", save_with_interference)

    refunded = payment_service.cancel_payment(payment.order_id)

    assert refunded.status == PaymentStatus.REFUNDED
    assert len(saves) == 2
    vehicle = catalog.get_vehicle("V1")
    assert vehicle.status == VehicleStatus.AVAILABLE
    assert vehicle.name == "Model 3 LR"


def test_zero_session_ttl_never_expires(redis_client, cart_service):
    sessions = PaymentSessionStore(redis_client, ttl_seconds=0)
    assert sessions.ttl_seconds == 0

    cart = cart_service.add_item("u1", "ACCESSORY", "A1")
    sessions.put("u1", PaymentSession(cart_id=cart.id, cart_checksum="0" * 64))

    assert redis_client.client.ttl(sessions.session_key("u1")) == -1
    assert sessions.get("u1").cart_id == cart.id


def test_modulo_policy_can_follow_zero_based_schedule():
    policy = modulo_approval_policy(3, 0)
    assert [policy(n) for n in range(1, 7)] == [True, True, False, True, True, False]
