from __future__ import annotations

import pytest

from app.core.billing.activation import record_payment
from app.core.billing.errors import TransactionNotFound
from app.core.billing.models import PaymentOrder, PaymentTransaction, Subscription

from tests.conftest import INR


def _pending(db, service, user, *, plan_id="basic_monthly", payment_id="pay_p1"):
    """A payment that was recorded but never activated."""
    created = service.create_order(db, user=user, plan_id=plan_id, locale=INR)
    db.commit()
    transaction, _ = record_payment(
        db,
        order=created.order,
        gateway_payment_id=payment_id,
        now=service.clock(),
    )
    db.commit()
    return transaction


def _reload(db, transaction_id) -> PaymentTransaction:
    db.expire_all()
    return db.get(PaymentTransaction, transaction_id)


def test_sweep_activates_paid_orders(db, service, gateway, clock, user):
    transaction = _pending(db, service, user)
    gateway.mark_paid(transaction.gateway_order_id, "pay_p1")
    transaction_id = transaction.id
    clock.advance(minutes=10)

    result = service.sweep(db)

    assert result.as_dict() == {
        "checked": 1,
        "recovered": 1,
        "failed": 0,
        "skipped": 0,
        "errors": [],
    }
    transaction = _reload(db, transaction_id)
    assert transaction.status == "completed"
    assert transaction.recovery_method == "automatic"
    assert transaction.recovered_at == clock.now

    live = db.query(Subscription).filter(Subscription.user_id == user.id).one()
    assert live.status == "active"
    assert live.source_transaction_id == transaction_id


def test_sweep_leaves_fresh_payments_alone(db, service, gateway, clock, user):
    transaction = _pending(db, service, user)
    gateway.mark_paid(transaction.gateway_order_id, "pay_p1")
    clock.advance(minutes=2)

    result = service.sweep(db)

    assert result.checked == 0
    assert _reload(db, transaction.id).status == "pending"


def test_sweep_marks_failed_gateway_orders(db, service, gateway, clock, user):
    transaction = _pending(db, service, user)
    gateway.orders[transaction.gateway_order_id]["status"] = "failed"
    transaction_id = transaction.id
    clock.advance(minutes=10)

    result = service.sweep(db)

    assert result.failed == 1
    transaction = _reload(db, transaction_id)
    assert transaction.status == "failed"
    assert "failed" in transaction.failure_reason
    order = db.get(PaymentOrder, transaction.payment_order_id)
    assert order.status == "failed"
    assert db.query(Subscription).count() == 0


def test_one_bad_transaction_does_not_stop_the_batch(
    db, service, gateway, clock, user, make_user
):
    broken = _pending(db, service, user, payment_id="pay_broken")
    gateway.unreachable.add(broken.gateway_order_id)
    broken_id = broken.id

    clock.advance(minutes=1)
    other = make_user(preferred_currency="INR")
    healthy = _pending(db, service, other, payment_id="pay_healthy")
    gateway.mark_paid(healthy.gateway_order_id, "pay_healthy")
    healthy_id = healthy.id

    clock.advance(minutes=10)
    result = service.sweep(db)

    assert result.checked == 2
    assert result.recovered == 1
    assert len(result.errors) == 1
    assert result.errors[0]["transaction_id"] == str(broken_id)
    assert _reload(db, broken_id).status == "pending"
    assert _reload(db, healthy_id).status == "completed"


def test_unverifiable_after_a_day_is_failed(db, service, gateway, clock, user):
    transaction = _pending(db, service, user)
    gateway.unreachable.add(transaction.gateway_order_id)
    transaction_id = transaction.id
    clock.advance(hours=25)

    result = service.sweep(db)

    assert result.failed == 1
    assert result.errors == []
    transaction = _reload(db, transaction_id)
    assert transaction.status == "failed"
    assert transaction.failure_reason == "Unable to verify after 24 hours"


def test_paid_order_without_captured_payment_stays_pending(
    db, service, gateway, clock, user
):
    transaction = _pending(db, service, user)
    gateway.orders[transaction.gateway_order_id]["status"] = "paid"
    clock.advance(minutes=10)

    result = service.sweep(db)

    assert result.checked == 1
    assert result.recovered == 0
    assert result.failed == 0
    assert _reload(db, transaction.id).status == "pending"


def test_transaction_without_gateway_order_is_skipped(db, service, clock, user):
    orphan = PaymentTransaction(
        user_id=user.id,
        plan_id="basic_monthly",
        plan_type="basic",
        plan_duration="monthly",
        amount=14900,
        currency="INR",
        status="pending",
        created_at=clock.now,
        updated_at=clock.now,
    )
    db.add(orphan)
    db.commit()
    clock.advance(minutes=10)

    result = service.sweep(db)

    assert result.skipped == 1
    assert _reload(db, orphan.id).status == "pending"


def test_batch_size_limits_the_sweep(db, service, gateway, clock, user, make_user):
    for n in range(3):
        account = user if n == 0 else make_user(preferred_currency="INR")
        _pending(db, service, account, payment_id=f"pay_b{n}")
        clock.advance(minutes=1)
    clock.advance(minutes=10)

    result = service.sweep(db, batch_size=2)

    assert result.checked == 2


def test_manual_recovery_without_callback(db, service, gateway, user):
    created = service.create_order(db, user=user, plan_id="standard_quarterly", locale=INR)
    db.commit()
    gateway_order_id = created.order.gateway_order_id
    gateway.mark_paid(gateway_order_id, "pay_lost")

    outcome = service.recover_order(db, user=user, gateway_order_id=gateway_order_id)

    assert outcome.status == "recovered"
    assert outcome.subscription.plan_id == "standard_quarterly"
    transaction = (
        db.query(PaymentTransaction)
        .filter(PaymentTransaction.gateway_payment_id == "pay_lost")
        .one()
    )
    assert transaction.status == "completed"
    assert transaction.recovery_method == "manual"

    again = service.recover_order(db, user=user, gateway_order_id=gateway_order_id)
    assert again.status == "completed"
    assert again.subscription.id == outcome.subscription.id


def test_manual_recovery_reports_gateway_status(db, service, gateway, user):
    created = service.create_order(db, user=user, plan_id="basic_monthly", locale=INR)
    db.commit()

    outcome = service.recover_order(
        db, user=user, gateway_order_id=created.order.gateway_order_id
    )
    assert outcome.status == "created"
    assert outcome.subscription is None


def test_manual_recovery_of_pending_transaction(db, service, gateway, user):
    transaction = _pending(db, service, user)
    gateway.orders[transaction.gateway_order_id]["status"] = "cancelled"

    outcome = service.recover_order(
        db, user=user, gateway_order_id=transaction.gateway_order_id
    )
    assert outcome.status == "failed"

    again = service.recover_order(
        db, user=user, gateway_order_id=transaction.gateway_order_id
    )
    assert again.status == "failed"
    assert "cancelled" in again.message


def test_manual_recovery_unknown_order(db, service, user):
    with pytest.raises(TransactionNotFound):
        service.recover_order(db, user=user, gateway_order_id="order_missing")


def test_recovery_stats(db, service, gateway, clock, user, make_user):
    recovered = _pending(db, service, user, payment_id="pay_ok")
    gateway.mark_paid(recovered.gateway_order_id, "pay_ok")
    lost = _pending(db, service, make_user(), payment_id="pay_lost")
    gateway.orders[lost.gateway_order_id]["status"] = "failed"
    _pending(db, service, make_user(), payment_id="pay_new")
    clock.advance(minutes=10)
    service.sweep(db)
    _pending(db, service, make_user(), payment_id="pay_fresh")

    stats = service.recovery_stats(db)

    assert stats["last_24_hours"] == {"recovered": 1, "failed": 1}
    assert stats["last_7_days"] == {"recovered": 1, "failed": 1}
    assert stats["currently_pending"] == 2
