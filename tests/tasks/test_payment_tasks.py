import asyncio

import pytest

from domain.payment.entity import CanonicalStatus
from domain.payment.exceptions import PaymentSessionNotFound
from infrastructure.tasks import TaskDispatcher
from infrastructure.tasks.config import celery as celery_config
from infrastructure.tasks.tasks import payments as payment_tasks


class SyncingGateway:
    provider = "payu"
    captures_on_authorize = True

    async def retrieve(self, data):
        return {**data, "status": "approved", "captured_at": "2025-01-01T00:00:00+00:00"}

    async def get_status(self, data):
        return CanonicalStatus.CAPTURED


@pytest.fixture
def wired(monkeypatch, repository):
    gateway = SyncingGateway()
    monkeypatch.setattr(payment_tasks, "get_payment_repository", lambda: repository)
    monkeypatch.setattr(payment_tasks, "get_payment_gateway", lambda provider, subprovider=None: gateway)
    return repository


def _create(repository, data, *statuses):
    async def _run():
        session = await repository.create_session(
            provider_id="pp_payu_payu", amount=50000, currency_code="COP", data=data
        )
        for status in statuses:
            session = await repository.update_session(session.id, status=status)
        return session

    return asyncio.run(_run())


def test_reconcile_session_applies_provider_status(wired):
    session = _create(wired, {"provider": "payu", "transaction_id": "tx-1"}, CanonicalStatus.AUTHORIZED)

    result = payment_tasks.reconcile_session.apply(args=(session.id,)).get()

    assert result == {"session_id": session.id, "status": "captured"}
    stored = asyncio.run(wired.retrieve_session(session.id))
    assert stored.data["captured_at"]


def test_reconcile_pending_only_schedules_sessions_with_remote_state(wired, monkeypatch):
    waiting = _create(wired, {"provider": "payu", "transaction_id": "tx-1"})
    _create(wired, {"provider": "payu", "reference": "order-1"})
    _create(wired, {"provider": "payu", "transaction_id": "tx-2"}, CanonicalStatus.AUTHORIZED)
    scheduled = []
    monkeypatch.setattr(payment_tasks.reconcile_session, "delay", lambda session_id: scheduled.append(session_id))

    result = payment_tasks.reconcile_pending.apply().get()

    assert result == {"scheduled": 1}
    assert scheduled == [waiting.id]


def test_dispatcher_sends_tasks_by_name(monkeypatch):
    sent = []
    monkeypatch.setattr(
        celery_config.celery_app,
        "send_task",
        lambda name, **kwargs: sent.append((name, kwargs)),
    )
    dispatcher = TaskDispatcher()

    dispatcher.schedule_reconciliation("payses_1", countdown=30)
    dispatcher.request_auto_capture("order_01")

    assert sent == [
        ("payments.reconcile_session", {"kwargs": {"session_id": "payses_1"}, "countdown": 30}),
        ("payments.auto_capture_order", {"kwargs": {"order_id": "order_01"}}),
    ]


def test_periodic_sweep_is_scheduled():
    schedule = celery_config.celery_app.conf.beat_schedule
    assert schedule["payments-reconcile-pending"]["task"] == "payments.reconcile_pending"


@pytest.fixture
def closed_runs(monkeypatch):
    runs = []

    async def _close():
        runs.append(asyncio.get_running_loop())

    monkeypatch.setattr(payment_tasks, "close_payment_gateways", _close)
    return runs


def test_each_run_closes_gateway_clients_inside_its_loop(wired, closed_runs):
    session = _create(wired, {"provider": "payu", "transaction_id": "tx-1"}, CanonicalStatus.AUTHORIZED)

    payment_tasks.reconcile_session.apply(args=(session.id,)).get()
    payment_tasks.reconcile_session.apply(args=(session.id,)).get()
    payment_tasks.auto_capture_order.apply(args=("order_01",)).get()

    assert len(closed_runs) == 3
    assert all(loop.is_closed() for loop in closed_runs)


def test_gateway_clients_are_closed_when_reconciliation_fails(wired, closed_runs):
    with pytest.raises(PaymentSessionNotFound):
        payment_tasks.reconcile_session.apply(args=("payses_missing",)).get()

    assert len(closed_runs) == 1
