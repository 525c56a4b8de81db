"""Tests for fulfillment.application.order_state_machine."""

import pytest
from sqlalchemy import update

from fulfillment.application.order_state_machine import OrderStateMachine
from fulfillment.domain.exceptions import InvalidStatusTransitionError, OrderNotFoundError
from fulfillment.domain.models import OrderStatus
from fulfillment.infrastructure.db_schema import orders_tbl


@pytest.fixture
def reserved_order(db):
    """Заказ на 2 шт. товара p1, резерв уже сделан при оформлении"""
    db.add_product("p1", "10", stock=8, reserved_stock=2)
    db.add_order("o1", status=OrderStatus.PAYMENT_PENDING, items=[("p1", 2, "10")], payment_ref="ref_1")
    return "o1"


async def run(uow, operation, *args, **kwargs):
    async with uow() as u:
        result = await getattr(OrderStateMachine(u), operation)(*args, **kwargs)
        await u.commit()
    return result


def set_status(db, order_id, status):
    with db.engine.begin() as conn:
        conn.execute(update(orders_tbl).where(orders_tbl.c.id == order_id).values(status=status))


class TestApplySuccess:
    async def test_marks_payment_received(self, db, uow, reserved_order):
        assert await run(uow, "apply_success", "o1", "ref_1", "pay_1") is True

        order = db.order("o1")
        assert OrderStatus(order.status) == OrderStatus.PAYMENT_RECEIVED
        assert order.payment_id == "pay_1"
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (8, 0)

        history = db.history("o1")
        assert OrderStatus(history[-1].status) == OrderStatus.PAYMENT_RECEIVED
        events = db.outbox()
        assert len(events) == 1
        assert events[0].event_data["old_status"] == "PAYMENT_PENDING"
        assert events[0].event_data["new_status"] == "PAYMENT_RECEIVED"

    async def test_duplicate_is_noop(self, db, uow, reserved_order):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        assert await run(uow, "apply_success", "o1", "ref_1", "pay_1") is False

        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (8, 0)
        assert len(db.history("o1")) == 1
        assert len(db.outbox()) == 1

    async def test_after_failure_is_noop(self, db, uow, reserved_order):
        await run(uow, "apply_failure", "o1", "ref_1", "BAD_REQUEST_ERROR - declined")
        assert await run(uow, "apply_success", "o1", "ref_1", "pay_2") is False

        assert OrderStatus(db.order("o1").status) == OrderStatus.FAILED
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (10, 0)

    async def test_unknown_order(self, uow):
        with pytest.raises(OrderNotFoundError):
            await run(uow, "apply_success", "missing", "ref_1")


class TestApplyFailure:
    async def test_releases_reservation(self, db, uow, reserved_order):
        assert await run(uow, "apply_failure", "o1", "ref_1", "declined", "pay_1") is True

        assert OrderStatus(db.order("o1").status) == OrderStatus.FAILED
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (10, 0)
        assert "declined" in db.history("o1")[-1].note

    async def test_after_success_is_noop(self, db, uow, reserved_order):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        assert await run(uow, "apply_failure", "o1", "ref_1", "late failure") is False

        assert OrderStatus(db.order("o1").status) == OrderStatus.PAYMENT_RECEIVED
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (8, 0)

    async def test_duplicate_is_noop(self, db, uow, reserved_order):
        await run(uow, "apply_failure", "o1", "ref_1", "declined")
        assert await run(uow, "apply_failure", "o1", "ref_1", "declined") is False

        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (10, 0)


class TestMarkPaymentPending:
    async def test_from_created(self, db, uow):
        db.add_order("o2", status=OrderStatus.CREATED)

        assert await run(uow, "mark_payment_pending", "o2", "ref_2") is True
        order = db.order("o2")
        assert OrderStatus(order.status) == OrderStatus.PAYMENT_PENDING
        assert order.payment_ref == "ref_2"

    async def test_keeps_existing_ref(self, db, uow, reserved_order):
        assert await run(uow, "mark_payment_pending", "o1", "ref_other") is False
        assert db.order("o1").payment_ref == "ref_1"


class TestApplyStatusUpdate:
    async def test_allowed_transition(self, db, uow, reserved_order):
        set_status(db, "o1", OrderStatus.PROCESSING)

        assert await run(uow, "apply_status_update", "o1", OrderStatus.SHIPPED, note="DHL 123") is True
        assert OrderStatus(db.order("o1").status) == OrderStatus.SHIPPED
        assert db.history("o1")[-1].note == "DHL 123"

    async def test_invalid_transition(self, db, uow, reserved_order):
        with pytest.raises(InvalidStatusTransitionError):
            await run(uow, "apply_status_update", "o1", OrderStatus.DELIVERED)
        assert OrderStatus(db.order("o1").status) == OrderStatus.PAYMENT_PENDING

    async def test_terminal_status_is_final(self, db, uow, reserved_order):
        set_status(db, "o1", OrderStatus.CANCELLED)
        with pytest.raises(InvalidStatusTransitionError):
            await run(uow, "apply_status_update", "o1", OrderStatus.PROCESSING)

    async def test_same_status_is_noop(self, db, uow, reserved_order):
        assert await run(uow, "apply_status_update", "o1", OrderStatus.PAYMENT_PENDING) is False
        assert db.history("o1") == []

    async def test_cancel_pending_releases_stock(self, db, uow, reserved_order):
        assert await run(uow, "apply_status_update", "o1", OrderStatus.CANCELLED, note="Покупатель передумал") is True

        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (10, 0)

    async def test_cancel_paid_keeps_stock(self, db, uow, reserved_order):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        assert await run(uow, "apply_status_update", "o1", OrderStatus.CANCELLED) is True

        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (8, 0)

    async def test_other_store(self, db, uow, reserved_order):
        with pytest.raises(OrderNotFoundError):
            await run(uow, "apply_status_update", "o1", OrderStatus.CANCELLED, store_id="store-2")

    async def test_pending_cannot_be_held(self, db, uow, reserved_order):
        with pytest.raises(InvalidStatusTransitionError):
            await run(uow, "apply_status_update", "o1", OrderStatus.ON_HOLD)

        assert OrderStatus(db.order("o1").status) == OrderStatus.PAYMENT_PENDING
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (8, 2)

    async def test_created_cannot_be_held(self, db, uow, reserved_order):
        set_status(db, "o1", OrderStatus.CREATED)
        with pytest.raises(InvalidStatusTransitionError):
            await run(uow, "apply_status_update", "o1", OrderStatus.ON_HOLD)
        assert OrderStatus(db.order("o1").status) == OrderStatus.CREATED

    @pytest.mark.parametrize("start", [OrderStatus.CREATED, OrderStatus.PAYMENT_PENDING])
    @pytest.mark.parametrize("target", [OrderStatus.CANCELLED, OrderStatus.FAILED])
    async def test_pending_exits_release_stock(self, db, uow, reserved_order, start, target):
        set_status(db, "o1", start)

        assert await run(uow, "apply_status_update", "o1", target) is True
        assert OrderStatus(db.order("o1").status) == target
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (10, 0)

    async def test_held_paid_order_cancelled_keeps_stock(self, db, uow, reserved_order):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        await run(uow, "apply_status_update", "o1", OrderStatus.ON_HOLD, note="Проверка адреса")

        assert await run(uow, "apply_status_update", "o1", OrderStatus.CANCELLED) is True
        assert OrderStatus(db.order("o1").status) == OrderStatus.CANCELLED
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (8, 0)

    async def test_hold_resumes_processing(self, db, uow, reserved_order):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        await run(uow, "apply_status_update", "o1", OrderStatus.ON_HOLD)

        assert await run(uow, "apply_status_update", "o1", OrderStatus.PROCESSING) is True
        assert [OrderStatus(entry.status) for entry in db.history("o1")] == [
            OrderStatus.PAYMENT_RECEIVED, OrderStatus.ON_HOLD, OrderStatus.PROCESSING,
        ]

    async def test_shipped_hold_does_not_go_back(self, db, uow, reserved_order):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        await run(uow, "apply_status_update", "o1", OrderStatus.PROCESSING)
        await run(uow, "apply_status_update", "o1", OrderStatus.SHIPPED)
        await run(uow, "apply_status_update", "o1", OrderStatus.ON_HOLD)

        with pytest.raises(InvalidStatusTransitionError):
            await run(uow, "apply_status_update", "o1", OrderStatus.PROCESSING)
        assert OrderStatus(db.order("o1").status) == OrderStatus.ON_HOLD

        assert await run(uow, "apply_status_update", "o1", OrderStatus.SHIPPED) is True
        assert await run(uow, "apply_status_update", "o1", OrderStatus.DELIVERED) is True
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (8, 0)

    async def test_shipped_hold_can_deliver(self, db, uow, reserved_order):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        await run(uow, "apply_status_update", "o1", OrderStatus.PROCESSING)
        await run(uow, "apply_status_update", "o1", OrderStatus.SHIPPED)
        await run(uow, "apply_status_update", "o1", OrderStatus.ON_HOLD)

        assert await run(uow, "apply_status_update", "o1", OrderStatus.DELIVERED) is True
        assert OrderStatus(db.order("o1").status) == OrderStatus.DELIVERED

    @pytest.mark.parametrize("start, target", [
        (OrderStatus.PAYMENT_RECEIVED, OrderStatus.REFUNDED),
        (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
        (OrderStatus.SHIPPED, OrderStatus.RETURNED),
        (OrderStatus.DELIVERED, OrderStatus.RETURNED),
        (OrderStatus.DELIVERED, OrderStatus.REFUNDED),
    ])
    async def test_side_exits_after_payment(self, db, uow, reserved_order, start, target):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        set_status(db, "o1", start)

        assert await run(uow, "apply_status_update", "o1", target) is True
        assert OrderStatus(db.order("o1").status) == target
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (8, 0)


class TestExpireAbandoned:
    async def test_pending_order_failed(self, db, uow, reserved_order):
        assert await run(uow, "expire_abandoned", "o1", 30) is True

        assert OrderStatus(db.order("o1").status) == OrderStatus.FAILED
        product = db.product("p1")
        assert (product.stock, product.reserved_stock) == (10, 0)

    async def test_paid_order_untouched(self, db, uow, reserved_order):
        await run(uow, "apply_success", "o1", "ref_1", "pay_1")
        assert await run(uow, "expire_abandoned", "o1", 30) is False
        assert OrderStatus(db.order("o1").status) == OrderStatus.PAYMENT_RECEIVED

    async def test_missing_order(self, uow):
        assert await run(uow, "expire_abandoned", "missing", 30) is False
