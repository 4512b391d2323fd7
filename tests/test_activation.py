from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.core.auth.models import User
from app.core.billing import activation
from app.core.billing.errors import (
    DuplicateActivationRace,
    InvalidPaymentSignature,
    OrderNotFound,
    PaymentsDisabledError,
)
from app.core.billing.models import PaymentOrder, PaymentTransaction, Subscription
from app.core.billing.plans import add_months
from app.core.billing.services import BillingService
from app.database.base import Base

from tests.conftest import INR, START


def _live_count(db, user) -> int:
    return (
        db.query(Subscription)
        .filter(
            Subscription.user_id == user.id,
            Subscription.status.in_(("active", "trialing")),
        )
        .count()
    )


def test_verified_payment_activates_subscription(db, user, buy):
    result = buy(user, "basic_monthly")

    subscription = result.subscription
    assert subscription.status == "active"
    assert subscription.plan_id == "basic_monthly"
    assert subscription.amount == 14900
    assert subscription.currency == "INR"
    assert subscription.current_period_start == START
    assert subscription.current_period_end == add_months(START, 1)
    assert subscription.source_transaction_id == result.transaction.id
    assert subscription.prior_subscription_id is None

    assert result.transaction.status == "completed"
    assert result.transaction.subscription_id == subscription.id
    assert not result.already_processed

    order = db.query(PaymentOrder).one()
    assert order.status == "paid"

    db.refresh(user)
    assert user.subscription_tier == "basic"
    assert user.subscription_status == "active"
    assert user.current_subscription_id == subscription.id


def test_replayed_verification_is_idempotent(db, service, gateway, user, buy):
    first = buy(user, "basic_monthly")
    gateway_order_id = first.transaction.gateway_order_id
    payment_id = first.transaction.gateway_payment_id

    again = service.verify_payment(
        db,
        user=user,
        gateway_order_id=gateway_order_id,
        gateway_payment_id=payment_id,
        signature=gateway.sign(gateway_order_id, payment_id),
    )

    assert again.already_processed
    assert again.subscription.id == first.subscription.id
    assert db.query(PaymentTransaction).count() == 1
    assert db.query(Subscription).count() == 1


def test_bad_signature_records_nothing(db, service, user):
    created = service.create_order(db, user=user, plan_id="basic_monthly", locale=INR)
    db.commit()

    with pytest.raises(InvalidPaymentSignature):
        service.verify_payment(
            db,
            user=user,
            gateway_order_id=created.order.gateway_order_id,
            gateway_payment_id="pay_forged",
            signature="0" * 64,
        )
    assert db.query(PaymentTransaction).count() == 0
    assert db.query(Subscription).count() == 0


def test_cannot_verify_someone_elses_order(db, service, gateway, user, make_user):
    created = service.create_order(db, user=user, plan_id="basic_monthly", locale=INR)
    db.commit()
    gateway_order_id = created.order.gateway_order_id
    stranger = make_user()

    with pytest.raises(OrderNotFound):
        service.verify_payment(
            db,
            user=stranger,
            gateway_order_id=gateway_order_id,
            gateway_payment_id="pay_x",
            signature=gateway.sign(gateway_order_id, "pay_x"),
        )


def test_verification_refused_while_payments_disabled(db, gateway, clock, user):
    service = BillingService(gateway=gateway, clock=clock, payments_enabled=False)
    with pytest.raises(PaymentsDisabledError):
        service.verify_payment(
            db,
            user=user,
            gateway_order_id="order_x",
            gateway_payment_id="pay_x",
            signature=gateway.sign("order_x", "pay_x"),
        )


def test_upgrade_reuses_the_subscription_slot(db, service, clock, gateway, user, buy):
    first = buy(user, "basic_monthly")
    first_id = first.subscription.id
    clock.advance(days=4)

    created = service.create_order(
        db, user=user, plan_id="standard_quarterly", locale=INR
    )
    db.commit()
    gateway_order_id = created.order.gateway_order_id
    # the user sits on the checkout page for a while
    clock.advance(days=10)

    result = service.verify_payment(
        db,
        user=user,
        gateway_order_id=gateway_order_id,
        gateway_payment_id="pay_upgrade",
        signature=gateway.sign(gateway_order_id, "pay_upgrade"),
    )

    subscription = result.subscription
    assert subscription.id == first_id
    assert subscription.plan_id == "standard_quarterly"
    assert subscription.prior_plan_id == "basic_monthly"
    assert subscription.current_period_start == clock.now
    assert subscription.current_period_end == add_months(clock.now, 3)
    # credit quoted at order time beats the smaller one recomputed now
    assert result.proration_credit == 13410
    assert subscription.applied_proration_credit == 13410
    assert result.transaction.transaction_type == "subscription_upgrade"
    assert result.transaction.prior_subscription_id == first_id

    assert db.query(Subscription).count() == 1
    assert _live_count(db, user) == 1
    db.refresh(user)
    assert user.subscription_tier == "standard"


def test_late_payment_for_same_plan_does_not_extend(db, service, clock, gateway, user, buy):
    stale = service.create_order(db, user=user, plan_id="basic_monthly", locale=INR)
    db.commit()
    stale_gateway_order_id = stale.order.gateway_order_id

    first = buy(user, "basic_monthly")
    period_end = first.subscription.current_period_end
    clock.advance(days=1)

    late = service.verify_payment(
        db,
        user=user,
        gateway_order_id=stale_gateway_order_id,
        gateway_payment_id="pay_late",
        signature=gateway.sign(stale_gateway_order_id, "pay_late"),
    )

    assert late.subscription.id == first.subscription.id
    assert late.subscription.current_period_end == period_end
    assert late.transaction.status == "completed"
    assert late.transaction.subscription_id == first.subscription.id
    assert _live_count(db, user) == 1


def test_at_most_one_live_subscription_after_many_payments(db, clock, user, buy):
    buy(user, "basic_monthly")
    clock.advance(days=2)
    buy(user, "standard_quarterly")
    clock.advance(days=2)
    buy(user, "pro_yearly")

    assert _live_count(db, user) == 1
    live = (
        db.query(Subscription)
        .filter(Subscription.user_id == user.id, Subscription.status == "active")
        .one()
    )
    assert live.plan_id == "pro_yearly"


@pytest.fixture
def file_sessions(tmp_path):
    """Independent sessions over one on-disk database, like two workers."""
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=file_engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    finally:
        file_engine.dispose()


def _pending_payment(session, service, account, plan_id, payment_id):
    created = service.create_order(session, user=account, plan_id=plan_id, locale=INR)
    session.commit()
    transaction, _ = activation.record_payment(
        session,
        order=created.order,
        gateway_payment_id=payment_id,
        now=service.clock(),
    )
    session.commit()
    return transaction.id


def _seed_account(session) -> User:
    account = User(email="race@example.com", name="Race", preferred_currency="INR")
    session.add(account)
    session.commit()
    return account


def test_two_sessions_activating_one_payment(file_sessions, service):
    setup = file_sessions()
    account = _seed_account(setup)
    transaction_id = _pending_payment(
        setup, service, account, "basic_monthly", "pay_race1"
    )
    setup.close()

    first, second = file_sessions(), file_sessions()
    try:
        seen_by_first = first.get(PaymentTransaction, transaction_id)
        seen_by_second = second.get(PaymentTransaction, transaction_id)
        assert seen_by_first.status == seen_by_second.status == "pending"

        won = service.engine.activate(first, seen_by_first, payment_id="pay_race1")
        first.commit()
        lost = service.engine.activate(second, seen_by_second, payment_id="pay_race1")
        second.commit()

        assert not won.already_processed
        assert lost.already_processed
        assert lost.subscription.id == won.subscription.id
    finally:
        first.close()
        second.close()

    check = file_sessions()
    try:
        assert check.query(Subscription).count() == 1
        assert check.get(PaymentTransaction, transaction_id).status == "completed"
    finally:
        check.close()


def test_stale_subscription_write_surfaces_race(file_sessions, service, clock):
    setup = file_sessions()
    account = _seed_account(setup)
    first_id = _pending_payment(setup, service, account, "basic_monthly", "pay_1")
    service.engine.activate(setup, setup.get(PaymentTransaction, first_id))
    setup.commit()
    slot = setup.query(Subscription).one()
    clock.now = slot.current_period_end + timedelta(days=1)

    renewal_id = _pending_payment(setup, service, account, "basic_monthly", "pay_2")
    upgrade_id = _pending_payment(setup, service, account, "pro_yearly", "pay_3")
    account_id = account.id
    setup.close()

    first, second = file_sessions(), file_sessions()
    try:
        # the second worker read the lapsed row before the first one renewed it
        stale = second.query(Subscription).filter_by(user_id=account_id).one()
        assert stale.status == "expired"

        service.engine.activate(first, first.get(PaymentTransaction, renewal_id))
        first.commit()

        with pytest.raises(DuplicateActivationRace) as exc_info:
            service.engine.activate(second, second.get(PaymentTransaction, upgrade_id))
        assert exc_info.value.http_code == 409

        result, _ = service._activate_with_retry(second, upgrade_id)
        assert result.subscription.plan_id == "pro_yearly"
        assert result.subscription.prior_plan_id == "basic_monthly"
    finally:
        first.close()
        second.close()

    check = file_sessions()
    try:
        assert check.query(Subscription).count() == 1
        assert (
            check.query(PaymentTransaction)
            .filter(PaymentTransaction.status == "completed")
            .count()
            == 3
        )
    finally:
        check.close()


def test_storage_refuses_a_second_live_subscription(file_sessions, service, clock):
    setup = file_sessions()
    account = _seed_account(setup)
    first_id = _pending_payment(setup, service, account, "basic_monthly", "pay_1")
    service.engine.activate(setup, setup.get(PaymentTransaction, first_id))
    setup.commit()
    account_id = account.id
    setup.close()

    writer = file_sessions()
    try:
        writer.add(
            Subscription(
                user_id=account_id,
                plan_id="pro_yearly",
                plan_type="pro",
                plan_name="Pro",
                plan_duration="yearly",
                status="active",
                amount=99900,
                currency="INR",
                current_period_start=clock.now,
                current_period_end=add_months(clock.now, 12),
                created_at=clock.now,
            )
        )
        with pytest.raises(IntegrityError):
            writer.commit()
    finally:
        writer.rollback()
        writer.close()


def test_verification_retries_once_after_race(db, service, user, buy, monkeypatch):
    real_activate = service.engine.activate
    calls = []

    def flaky(db_, transaction, **kwargs):
        calls.append(transaction.id)
        if len(calls) == 1:
            raise DuplicateActivationRace(transaction.user_id)
        return real_activate(db_, transaction, **kwargs)

    monkeypatch.setattr(service.engine, "activate", flaky)
    result = buy(user, "basic_monthly")

    assert len(calls) == 2
    assert result.subscription.status == "active"
