import asyncio

import pytest

from pipeline.errors import (
    CartLimitExceeded,
    EmailMismatch,
    EmptyOrZeroValueCart,
    InvalidTransition,
    OrderNotFound,
    ValidationError,
)
from pipeline.lifecycle import OrderLifecycleEngine, normalize_cart
from schemas.order_definitions import AuditEventType, NotificationStage, OrderStatus, PaymentStatus, Product
from services.notifications import INotificationSink, RecordingNotificationSink


class ExplodingSink(INotificationSink):
    async def notify(self, order, stage):
        raise RuntimeError("relay exploded")


class GatedSink(INotificationSink):
    """Holds the first notification until ``release`` is set."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.delivered = []

    async def notify(self, order, stage):
        if not self.entered.is_set():
            self.entered.set()
            await self.release.wait()
        self.delivered.append(order.id)
        return True


async def order_in_pending_code(engine, email="a@b.com"):
    order = await engine.create_order({"c30": 2})
    await engine.submit_email(order.id, email, {"c30": 2})
    order, _ = await engine.submit_code(order.id, email, "123456")
    return order


def test_normalize_cart_rejects_bad_input():
    assert normalize_cart({"c30": 2}) == {"c30": 2}
    for bad in ({}, None, [], {"c30": 0}, {"c30": -1}, {"c30": 1.5}, {"c30": True}, {"": 1}):
        with pytest.raises(ValidationError):
            normalize_cart(bad)


@pytest.mark.asyncio
async def test_full_checkout_flow(engine, notifier):
    order = await engine.create_order({"c30": 2}, payment_method="card")
    assert order.status == OrderStatus.CREATED
    assert order.amount == 200

    order, notified = await engine.submit_email(order.id, "a@b.com", {"c30": 2})
    assert notified is True
    assert order.status == OrderStatus.PENDING_EMAIL
    assert order.email == "a@b.com"

    order, notified = await engine.submit_code(order.id, "a@b.com", " 123456 ")
    assert notified is True
    assert order.status == OrderStatus.PENDING_CODE
    assert order.code == "123456"

    order = await engine.mark_completed(order.id, comment="delivered")
    assert order.status == OrderStatus.COMPLETED
    assert order.completed_at is not None
    assert order.admin_comment == "delivered"

    assert [stage for _, stage, _ in notifier.events] == [
        NotificationStage.EMAIL_SUBMITTED,
        NotificationStage.CODE_SUBMITTED,
    ]


@pytest.mark.asyncio
async def test_zero_value_order_can_exist_but_not_be_paid(engine):
    order = await engine.create_order({"free": 3})
    assert order.amount == 0

    order, _ = await engine.submit_email(order.id, "a@b.com", {"unknown": 1})
    assert order.amount == 0
    assert order.status == OrderStatus.PENDING_EMAIL

    with pytest.raises(EmptyOrZeroValueCart):
        await engine.prepare_payment(order.id, "card")
    assert (await engine.get_order(order.id)).payment_method is None


@pytest.mark.asyncio
async def test_price_scenario(engine, catalog):
    await catalog.upsert_product(Product(id="c30", name="30 coins", price=200))

    order = await engine.create_order({"c30": 2})
    assert order.amount == 400

    order, _ = await engine.submit_email(order.id, "a@b.com", {"c30": 2})
    assert order.status == OrderStatus.PENDING_EMAIL
    assert order.amount == 400

    again, _ = await engine.submit_email(order.id, "a@b.com", {"c30": 2})
    assert again.amount == 400
    assert len(await engine.list_orders()) == 1

    order, _ = await engine.submit_code(order.id, "a@b.com", "123456")
    assert order.status == OrderStatus.PENDING_CODE

    order = await engine.mark_completed(order.id)
    assert order.status == OrderStatus.COMPLETED
    assert order.completed_at is not None


@pytest.mark.asyncio
async def test_unknown_products_price_at_zero(engine):
    order = await engine.create_order({"c30": 1, "ghost": 5})
    assert order.amount == 100


@pytest.mark.asyncio
async def test_submit_email_reprices_and_can_be_repeated(engine):
    order = await engine.create_order({"c30": 1})
    order, _ = await engine.submit_email(order.id, "a@b.com", {"c30": 1, "c60": 1})
    assert order.amount == 280

    order, _ = await engine.submit_email(order.id, "c@d.com", {"c60": 2})
    assert order.email == "c@d.com"
    assert order.cart == {"c60": 2}
    assert order.amount == 360


@pytest.mark.asyncio
async def test_submit_email_validates_email(engine):
    order = await engine.create_order({"c30": 1})
    with pytest.raises(ValidationError):
        await engine.submit_email(order.id, "not-an-email", {"c30": 1})
    assert (await engine.get_order(order.id)).status == OrderStatus.CREATED


@pytest.mark.asyncio
async def test_submit_email_rejects_display_name(engine):
    order = await engine.create_order({"c30": 1})
    for raw in ("Mallory <a@b.com>", "<a@b.com>"):
        with pytest.raises(ValidationError):
            await engine.submit_email(order.id, raw, {"c30": 1})
    order = await engine.get_order(order.id)
    assert order.status == OrderStatus.CREATED
    assert order.email is None

    order, _ = await engine.submit_email(order.id, "  a@b.com ", {"c30": 1})
    assert order.email == "a@b.com"


@pytest.mark.asyncio
async def test_submit_email_respects_cart_ceiling(store, notifier, catalog):
    await catalog.update_settings(cart_ceiling=250)
    engine = OrderLifecycleEngine(store, catalog, notifier)
    order = await engine.create_order({"c30": 1})

    with pytest.raises(CartLimitExceeded):
        await engine.submit_email(order.id, "a@b.com", {"c30": 3})
    unchanged = await engine.get_order(order.id)
    assert unchanged.status == OrderStatus.CREATED
    assert unchanged.email is None
    assert notifier.events == []


@pytest.mark.asyncio
async def test_submit_email_after_code_is_rejected(engine):
    order = await order_in_pending_code(engine)
    with pytest.raises(InvalidTransition):
        await engine.submit_email(order.id, "a@b.com", {"c30": 1})


@pytest.mark.asyncio
async def test_submit_code_requires_matching_email(engine):
    order = await engine.create_order({"c30": 1})
    with pytest.raises(InvalidTransition):
        await engine.submit_code(order.id, "a@b.com", "1")

    await engine.submit_email(order.id, "a@b.com", {"c30": 1})
    with pytest.raises(EmailMismatch):
        await engine.submit_code(order.id, "x@y.com", "1")
    order = await engine.get_order(order.id)
    assert order.status == OrderStatus.PENDING_EMAIL
    assert order.code is None


@pytest.mark.asyncio
async def test_submit_code_can_be_resent(engine):
    order = await order_in_pending_code(engine)
    order, _ = await engine.submit_code(order.id, "a@b.com", "999999")
    assert order.status == OrderStatus.PENDING_CODE
    assert order.code == "999999"


@pytest.mark.asyncio
async def test_submit_code_requires_code(engine):
    order = await engine.create_order({"c30": 1})
    await engine.submit_email(order.id, "a@b.com", {"c30": 1})
    with pytest.raises(ValidationError):
        await engine.submit_code(order.id, "a@b.com", "   ")


@pytest.mark.asyncio
async def test_unknown_order(engine):
    with pytest.raises(OrderNotFound):
        await engine.submit_email("missing", "a@b.com", {"c30": 1})
    with pytest.raises(OrderNotFound):
        await engine.audit_trail("missing")


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_transition(store, catalog):
    engine = OrderLifecycleEngine(store, catalog, RecordingNotificationSink(succeed=False))
    order = await engine.create_order({"c30": 1})
    order, notified = await engine.submit_email(order.id, "a@b.com", {"c30": 1})
    assert notified is False
    assert (await engine.get_order(order.id)).status == OrderStatus.PENDING_EMAIL

    engine = OrderLifecycleEngine(store, catalog, ExplodingSink())
    order, notified = await engine.submit_code(order.id, "a@b.com", "123")
    assert notified is False
    assert (await engine.get_order(order.id)).status == OrderStatus.PENDING_CODE


@pytest.mark.asyncio
async def test_admin_can_only_finish_pending_code_orders(engine):
    order = await engine.create_order({"c30": 1})
    with pytest.raises(InvalidTransition):
        await engine.mark_completed(order.id)

    order = await order_in_pending_code(engine)
    with pytest.raises(ValidationError):
        await engine.set_status(order.id, OrderStatus.CREATED)

    rejected = await engine.set_status(order.id, OrderStatus.REJECTED)
    assert rejected.status == OrderStatus.REJECTED
    assert rejected.rejected_at is not None


@pytest.mark.asyncio
async def test_terminal_orders_are_locked(engine):
    order = await order_in_pending_code(engine)
    done = await engine.mark_completed(order.id)

    with pytest.raises(InvalidTransition):
        await engine.mark_rejected(order.id)
    with pytest.raises(InvalidTransition):
        await engine.submit_code(order.id, "a@b.com", "1")
    with pytest.raises(InvalidTransition):
        await engine.record_payment_result(order.id, "success")

    commented = await engine.set_admin_comment(order.id, "checked twice")
    assert commented.admin_comment == "checked twice"
    assert commented.status == OrderStatus.COMPLETED
    assert commented.completed_at == done.completed_at


@pytest.mark.asyncio
async def test_payment_result_never_downgrades_paid(engine):
    order = await engine.create_order({"c30": 1})

    paid = await engine.record_payment_result(order.id, "SUCCESS")
    assert paid.payment_status == PaymentStatus.PAID
    assert paid.paid_at is not None
    assert paid.status == OrderStatus.CREATED

    again = await engine.record_payment_result(order.id, "failed")
    assert again.payment_status == PaymentStatus.PAID
    assert again.paid_at == paid.paid_at

    untouched = await engine.record_payment_result(order.id, "processing")
    assert untouched.version == again.version


@pytest.mark.asyncio
async def test_failed_payment_can_later_succeed(engine):
    order = await engine.create_order({"c30": 1})
    failed = await engine.record_payment_result(order.id, "canceled")
    assert failed.payment_status == PaymentStatus.FAILED
    assert failed.statuses == ["created", "failed"]

    paid = await engine.record_payment_result(order.id, "paid")
    assert paid.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_audit_trail_records_each_step(engine):
    order = await order_in_pending_code(engine)
    await engine.mark_completed(order.id)

    events = [e.event_type for e in await engine.audit_trail(order.id)]
    assert events == [
        AuditEventType.ORDER_CREATED,
        AuditEventType.EMAIL_SUBMITTED,
        AuditEventType.NOTIFICATION_SENT,
        AuditEventType.CODE_SUBMITTED,
        AuditEventType.NOTIFICATION_SENT,
        AuditEventType.ORDER_COMPLETED,
    ]


@pytest.mark.asyncio
async def test_list_orders_by_status(engine):
    await engine.create_order({"c30": 1})
    order = await order_in_pending_code(engine)

    pending = await engine.list_orders(status="pending_code")
    assert [o.id for o in pending] == [order.id]
    assert len(await engine.list_orders()) == 2


@pytest.mark.asyncio
async def test_slow_relay_does_not_block_other_orders(store, catalog):
    sink = GatedSink()
    engine = OrderLifecycleEngine(store, catalog, sink)
    first = await engine.create_order({"c30": 1})
    second = await engine.create_order({"c60": 1})

    stuck = asyncio.create_task(engine.submit_email(first.id, "a@b.com", {"c30": 1}))
    await sink.entered.wait()

    order, notified = await asyncio.wait_for(engine.submit_email(second.id, "c@d.com", {"c60": 1}), timeout=1)
    assert notified is True
    assert order.status == OrderStatus.PENDING_EMAIL
    comment = await asyncio.wait_for(engine.set_admin_comment(first.id, "looking"), timeout=1)
    assert comment.admin_comment == "looking"
    assert not stuck.done()

    sink.release.set()
    order, _ = await stuck
    assert order.status == OrderStatus.PENDING_EMAIL
    assert sink.delivered == [second.id, first.id]
