import pytest

from core.errors import AuthorizationError, InsufficientBalance, InvalidTransition, ValidationError
from models.enums import (
    OrderStatus,
    PaymentStatus,
    ReturnReason,
    ReturnStatus,
    TransactionDirection,
    TransactionType,
)
from models.transaction import Transaction
from schemas.return_request import ReturnItemIn
from services import ledger
from services import returns as return_service


@pytest.fixture
def product(make_product):
    return make_product(price=10_000, quantity=10)


@pytest.fixture
def delivered(place_order, deliver_order, product):
    return deliver_order(place_order([(product, None, 2)]))


def _ask(db, actor, order, qty=1, product_id=None, reason="Too small"):
    items = [ReturnItemIn(product_id=product_id or order.items[0].product_id, quantity=qty)]
    return return_service.request_return(db, actor, order.id, items, reason, ReturnReason.WRONG_ITEM)


class TestEligibility:
    def test_inside_window(self, db, delivered, customer_actor, clock):
        clock.advance(hours=47)
        return_request = _ask(db, customer_actor, delivered)
        assert return_request.status == ReturnStatus.REQUESTED
        assert return_request.refund_amount == 10_000
        assert return_request.reason_category == ReturnReason.WRONG_ITEM

    def test_window_expired(self, db, delivered, customer_actor, clock):
        clock.advance(hours=49)
        with pytest.raises(ValidationError, match="return window has expired"):
            _ask(db, customer_actor, delivered)

    def test_undelivered_order(self, db, place_order, product, customer_actor):
        order = place_order([(product, None, 1)])
        with pytest.raises(ValidationError, match="Only delivered orders"):
            _ask(db, customer_actor, order)

    def test_one_active_return_per_order(self, db, delivered, customer_actor):
        _ask(db, customer_actor, delivered)
        with pytest.raises(ValidationError, match="already in progress"):
            _ask(db, customer_actor, delivered)

    def test_rejected_return_frees_the_order(self, db, delivered, customer_actor, vendor_actor):
        first = _ask(db, customer_actor, delivered)
        return_service.reject_return(db, vendor_actor, first.id, "Worn item")
        second = _ask(db, customer_actor, delivered)
        assert second.id != first.id

    def test_only_the_customer(self, db, delivered, vendor_actor):
        with pytest.raises(AuthorizationError):
            _ask(db, vendor_actor, delivered)

    def test_reason_required(self, db, delivered, customer_actor):
        with pytest.raises(ValidationError, match="reason"):
            _ask(db, customer_actor, delivered, reason="   ")


class TestItems:
    def test_cannot_exceed_ordered_quantity(self, db, delivered, customer_actor):
        with pytest.raises(ValidationError, match="Cannot return more than 2"):
            _ask(db, customer_actor, delivered, qty=3)

    def test_repeated_lines_count_together(self, db, delivered, customer_actor):
        product_id = delivered.items[0].product_id
        items = [ReturnItemIn(product_id=product_id, quantity=2), ReturnItemIn(product_id=product_id, quantity=1)]
        with pytest.raises(ValidationError, match="Cannot return more than"):
            return_service.request_return(db, customer_actor, delivered.id, items, "Broken")

    def test_product_not_in_order(self, db, delivered, customer_actor, make_product):
        stranger = make_product(title="Bazin shirt")
        with pytest.raises(ValidationError, match="not part of this order"):
            _ask(db, customer_actor, delivered, product_id=stranger.id)

    def test_priced_from_order_snapshot(self, db, delivered, customer_actor, product):
        product.price = 99_000
        db.commit()
        assert _ask(db, customer_actor, delivered).refund_amount == 10_000


class TestReturnLifecycle:
    @pytest.fixture
    def requested(self, db, delivered, customer_actor):
        return _ask(db, customer_actor, delivered)

    def test_vendor_notified_on_request(self, requested, sent_notifications):
        assert sent_notifications[-1][0] == "vendor@example.com"
        assert sent_notifications[-1][1].startswith("Return requested for order")

    def test_approve_receive_refund_partial(
        self, db, requested, delivered, product, store, fund_store, vendor_actor, queued_refunds,
    ):
        fund_store(store, 50_000)

        return_service.approve_return(db, vendor_actor, requested.id, notes="Send it back")
        assert requested.status == ReturnStatus.APPROVED
        assert requested.vendor_notes == "Send it back"

        return_service.confirm_received(db, vendor_actor, requested.id)
        assert requested.status == ReturnStatus.RECEIVED
        assert product.quantity == 9

        result = return_service.process_refund(db, vendor_actor, requested.id)
        assert result == {"return_id": requested.id, "refund_amount": 10_000, "order_refunded": False}
        assert requested.status == ReturnStatus.REFUNDED
        assert store.balance == 40_000
        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.payment_status == PaymentStatus.PAID
        assert queued_refunds == [(requested.id,)]

        refund = db.query(Transaction).filter(Transaction.type == TransactionType.REFUND).one()
        assert refund.direction == TransactionDirection.DEBIT
        assert (refund.amount, refund.balance_before, refund.balance_after) == (10_000, 50_000, 40_000)
        assert ledger.audit_ledger(db, store) == []

    def test_full_return_refunds_the_order(self, db, delivered, store, fund_store, customer_actor, vendor_actor):
        fund_store(store, 50_000)
        return_request = _ask(db, customer_actor, delivered, qty=2)
        return_service.approve_return(db, vendor_actor, return_request.id)
        return_service.confirm_received(db, vendor_actor, return_request.id)

        result = return_service.process_refund(db, vendor_actor, return_request.id)

        assert result["order_refunded"] is True
        assert result["refund_amount"] == 20_000
        assert delivered.status == OrderStatus.REFUNDED
        assert delivered.payment_status == PaymentStatus.REFUNDED
        assert store.balance == 30_000

    def test_earlier_returns_count_against_the_order(
        self, db, delivered, product, store, fund_store, customer_actor, vendor_actor,
    ):
        fund_store(store, 50_000)

        def settle(return_request):
            return_service.approve_return(db, vendor_actor, return_request.id)
            return_service.confirm_received(db, vendor_actor, return_request.id)
            return return_service.process_refund(db, vendor_actor, return_request.id)

        first = settle(_ask(db, customer_actor, delivered, qty=1))
        assert first["order_refunded"] is False

        with pytest.raises(ValidationError, match="Cannot return more than 1"):
            _ask(db, customer_actor, delivered, qty=2)

        second = settle(_ask(db, customer_actor, delivered, qty=1))
        assert second["order_refunded"] is True

        refunded = db.query(Transaction).filter(Transaction.type == TransactionType.REFUND).all()
        assert sum(t.amount for t in refunded) == delivered.subtotal == 20_000
        assert delivered.subtotal <= delivered.total_amount
        assert product.quantity == 10
        assert delivered.status == OrderStatus.REFUNDED
        assert store.balance == 30_000

    def test_refund_needs_spendable_balance(self, db, requested, store, vendor_actor, queued_refunds):
        return_service.approve_return(db, vendor_actor, requested.id)
        return_service.confirm_received(db, vendor_actor, requested.id)

        with pytest.raises(InsufficientBalance):
            return_service.process_refund(db, vendor_actor, requested.id)

        assert requested.status == ReturnStatus.RECEIVED
        assert store.balance == 0
        assert db.query(Transaction).filter(Transaction.type == TransactionType.REFUND).count() == 0
        assert queued_refunds == []

    def test_cannot_refund_before_receiving(self, db, requested, store, fund_store, vendor_actor):
        fund_store(store, 50_000)
        return_service.approve_return(db, vendor_actor, requested.id)
        with pytest.raises(InvalidTransition):
            return_service.process_refund(db, vendor_actor, requested.id)

    def test_rejected_is_terminal(self, db, requested, vendor_actor, sent_notifications):
        return_service.reject_return(db, vendor_actor, requested.id, "Item was worn")
        assert requested.rejection_reason == "Item was worn"
        assert sent_notifications[-1][0] == "customer@example.com"
        with pytest.raises(InvalidTransition):
            return_service.approve_return(db, vendor_actor, requested.id)

    def test_rejection_needs_a_reason(self, db, requested, vendor_actor):
        with pytest.raises(ValidationError):
            return_service.reject_return(db, vendor_actor, requested.id, "")

    def test_only_store_owner_decides(self, db, requested, customer_actor, admin_actor):
        with pytest.raises(AuthorizationError):
            return_service.approve_return(db, customer_actor, requested.id)
        with pytest.raises(AuthorizationError):
            return_service.approve_return(db, admin_actor, requested.id)

    def test_refund_reference(self, db, requested):
        return_service.record_refund_reference(db, requested.id, "rf_123")
        assert requested.refund_reference == "rf_123"


def test_state_machine():
    return_service.assert_valid_return_transition(ReturnStatus.REQUESTED, ReturnStatus.APPROVED)
    return_service.assert_valid_return_transition(ReturnStatus.RECEIVED, ReturnStatus.REFUNDED)
    with pytest.raises(InvalidTransition):
        return_service.assert_valid_return_transition(ReturnStatus.REQUESTED, ReturnStatus.RECEIVED)
    with pytest.raises(InvalidTransition):
        return_service.assert_valid_return_transition(ReturnStatus.REFUNDED, ReturnStatus.APPROVED)
