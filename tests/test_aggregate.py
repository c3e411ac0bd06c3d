"""Tests for the order lifecycle state machine."""

from datetime import timedelta

import pytest

from order_service.aggregate import TRANSITIONS, TransitionMetadata, can_transition, transition
from order_service.domain import OrderStatus, PaymentMethod, PaymentStatus
from order_service.errors import InvalidTransition

ALL_PAIRS = [(a, b) for a in OrderStatus for b in OrderStatus]
ILLEGAL_PAIRS = [(a, b) for a, b in ALL_PAIRS if b not in TRANSITIONS[a]]
LEGAL_PAIRS = [(a, b) for a, b in ALL_PAIRS if b in TRANSITIONS[a]]


class TestTransitionTable:

    def test_terminal_states(self):
        assert TRANSITIONS[OrderStatus.CANCELLED] == frozenset()
        assert TRANSITIONS[OrderStatus.RETURNED] == frozenset()

    def test_shipped_orders_cannot_be_cancelled(self):
        assert not can_transition(OrderStatus.SHIPPED, OrderStatus.CANCELLED)
        assert not can_transition(OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED)

    @pytest.mark.parametrize("current,target", ILLEGAL_PAIRS)
    def test_illegal_transition_is_rejected(self, make_order, current, target):
        order = make_order(status=current)
        with pytest.raises(InvalidTransition) as exc_info:
            transition(order, target)
        assert exc_info.value.from_status == current.value
        assert exc_info.value.to_status == target.value
        assert order.status == current

    @pytest.mark.parametrize("current,target", LEGAL_PAIRS)
    def test_legal_transition_appends_tracking(self, make_order, now, current, target):
        order = make_order(status=current)
        updated = transition(order, target, now=now)
        assert updated.status == target
        assert len(updated.tracking) == len(order.tracking) + 1
        assert updated.tracking[-1].status == target
        assert updated.tracking[-1].note == f'Status updated from "{current.value}" to "{target.value}"'


class TestSideEffects:

    def test_input_order_is_not_mutated(self, make_order, now):
        order = make_order()
        transition(order, OrderStatus.CONFIRMED, now=now)
        assert order.status == OrderStatus.PENDING
        assert order.confirmed_at is None
        assert len(order.tracking) == 1

    def test_delivered_to_processing_is_invalid(self, make_order):
        order = make_order(status=OrderStatus.DELIVERED)
        with pytest.raises(InvalidTransition, match='from "delivered" to "processing"'):
            transition(order, OrderStatus.PROCESSING)

    def test_confirm_sets_timestamp(self, make_order, now):
        updated = transition(make_order(), OrderStatus.CONFIRMED, now=now)
        assert updated.confirmed_at == now

    def test_ship_records_carrier(self, make_order, now):
        meta = TransitionMetadata(tracking_number="TRK-1", carrier="Pathao", updated_by="admin-1")
        updated = transition(make_order(status=OrderStatus.PROCESSING), OrderStatus.SHIPPED, meta, now=now)
        assert updated.shipping.tracking_number == "TRK-1"
        assert updated.shipping.carrier == "Pathao"
        assert updated.shipped_at == now
        assert updated.tracking[-1].updated_by == "admin-1"

    def test_cash_on_delivery_is_paid_on_delivery(self, make_order, now):
        order = make_order(status=OrderStatus.SHIPPED)
        updated = transition(order, OrderStatus.DELIVERED, now=now)
        assert updated.delivered_at == now
        assert updated.shipping.actual_delivery == now
        assert updated.payment.status == PaymentStatus.COMPLETED
        assert updated.payment.paid_at == now

    def test_prepaid_delivery_leaves_payment_alone(self, make_order, now):
        order = make_order(status=OrderStatus.SHIPPED, payment_method=PaymentMethod.BKASH)
        updated = transition(order, OrderStatus.DELIVERED, now=now)
        assert updated.payment.status == PaymentStatus.PENDING

    def test_refunded_payment_never_reverts_to_completed(self, make_order, now):
        order = make_order(status=OrderStatus.OUT_FOR_DELIVERY)
        order = order.model_copy(
            update={"payment": order.payment.model_copy(update={"status": PaymentStatus.REFUNDED})}
        )
        updated = transition(order, OrderStatus.DELIVERED, now=now)
        assert updated.payment.status == PaymentStatus.REFUNDED

    def test_cancelling_paid_order_refunds_total(self, make_order, now):
        order = make_order(status=OrderStatus.CONFIRMED, payment_method=PaymentMethod.CARD)
        order = order.model_copy(
            update={"payment": order.payment.model_copy(update={"status": PaymentStatus.COMPLETED})}
        )
        meta = TransitionMetadata(cancel_reason="Changed my mind")
        updated = transition(order, OrderStatus.CANCELLED, meta, now=now)
        assert updated.status == OrderStatus.CANCELLED
        assert updated.payment.status == PaymentStatus.REFUNDED
        assert updated.payment.refund_amount == order.pricing.total
        assert updated.payment.refunded_at == now
        assert updated.cancellation_reason == "Changed my mind"
        assert updated.cancelled_at == now

    def test_cancelling_unpaid_order_does_not_refund(self, make_order, now):
        updated = transition(make_order(), OrderStatus.CANCELLED, now=now)
        assert updated.payment.status == PaymentStatus.PENDING
        assert updated.payment.refund_amount == 0

    def test_return_always_refunds(self, make_order, now):
        order = make_order(status=OrderStatus.DELIVERED, delivered_at=now - timedelta(days=1))
        meta = TransitionMetadata(return_reason="Wrong size")
        updated = transition(order, OrderStatus.RETURNED, meta, now=now)
        assert updated.payment.status == PaymentStatus.REFUNDED
        assert updated.payment.refund_amount == 218
        assert updated.return_reason == "Wrong size"
        assert updated.returned_at == now

    def test_custom_note(self, make_order, now):
        meta = TransitionMetadata(note="Packed and ready")
        updated = transition(make_order(status=OrderStatus.CONFIRMED), OrderStatus.PROCESSING, meta, now=now)
        assert updated.tracking[-1].note == "Packed and ready"


class TestDerivedProperties:

    def test_can_be_cancelled(self, make_order):
        assert make_order(status=OrderStatus.PROCESSING).can_be_cancelled
        assert not make_order(status=OrderStatus.SHIPPED).can_be_cancelled

    def test_can_be_returned_within_window(self, make_order, now):
        order = make_order(status=OrderStatus.DELIVERED, delivered_at=now - timedelta(days=3))
        assert order.can_be_returned(now, window_days=7)
        assert not order.can_be_returned(now + timedelta(days=5), window_days=7)

    def test_customer_type(self, make_order):
        assert make_order().customer_type == "registered"
        assert make_order(user_id=None, guest_email="g@example.com").customer_type == "guest"
