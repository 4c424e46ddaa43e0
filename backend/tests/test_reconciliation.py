"""
Tests for the reconciliation sweep and its scheduler.
"""
import logging
from datetime import timedelta
from decimal import Decimal

import pytest

from pesarena.db.models import utcnow
from pesarena.models.payments import PaymentAttempt, PaymentOutcome
from pesarena.services.scheduler import SWEEP_JOB_ID, ReconciliationScheduler


async def bound_payment(services, attempt_id: str, correlation_id: str, age_minutes: int = 0):
    await services.payments.create(PaymentAttempt(
        id=attempt_id,
        subject_id="T1",
        requester_id="uid_1",
        amount=Decimal("500"),
        phone="254712345678",
        created_at=utcnow() - timedelta(minutes=age_minutes),
    ))
    return await services.payments.attach_correlation(attempt_id, correlation_id)


class TestSweep:

    @pytest.mark.asyncio
    async def test_clean_database(self, services) -> None:
        report = await services.reconciliation.sweep()

        assert report.gap_count == 0
        assert report.to_dict()["gapCount"] == 0

    @pytest.mark.asyncio
    async def test_stale_pending_is_reported(self, services, caplog) -> None:
        await bound_payment(services, "TXN_OLD", "ws_CO_1", age_minutes=30)
        await bound_payment(services, "TXN_NEW", "ws_CO_2")
        caplog.set_level(logging.WARNING)

        report = await services.reconciliation.sweep()

        assert [a.id for a in report.stale_pending] == ["TXN_OLD"]
        assert report.to_dict()["stalePending"] == ["TXN_OLD"]
        assert "reconciliation:gap" in caplog.text

    @pytest.mark.asyncio
    async def test_completed_payment_without_registration_update(self, services) -> None:
        await services.registrations.create("uid_1", "T1")
        await bound_payment(services, "TXN_1", "ws_CO_1")
        # resolve directly, skipping the registration write
        await services.payments.resolve("ws_CO_1", PaymentOutcome(result_code=0, receipt_reference="QAI12345"))

        report = await services.reconciliation.sweep()

        assert [a.id for a in report.unapplied_registrations] == ["TXN_1"]
        assert report.stale_pending == []

    @pytest.mark.asyncio
    async def test_applied_payment_is_clean(self, services, make_stk_callback) -> None:
        await services.registrations.create("uid_1", "T1")
        await bound_payment(services, "TXN_1", "ws_CO_1")
        await services.callbacks.process(make_stk_callback("ws_CO_1"))

        report = await services.reconciliation.sweep()

        assert report.gap_count == 0

    @pytest.mark.asyncio
    async def test_payment_without_registration_is_not_a_gap(self, services) -> None:
        await bound_payment(services, "TXN_1", "ws_CO_1")
        await services.payments.resolve("ws_CO_1", PaymentOutcome(result_code=0, receipt_reference="R1"))

        report = await services.reconciliation.sweep()

        assert report.unapplied_registrations == []


class TestScheduler:

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, services, caplog) -> None:
        caplog.set_level(logging.INFO)
        scheduler = ReconciliationScheduler(services.reconciliation, interval_minutes=5)
        assert not scheduler.running
        assert scheduler.next_run_time() is None

        scheduler.start()
        try:
            assert scheduler.running
            assert scheduler.next_run_time() is not None
            # second start is ignored
            scheduler.start()
        finally:
            await scheduler.shutdown(wait=False)

        assert not scheduler.running
        assert "Reconciliation scheduler shutdown (wait=False)" in caplog.text

        # already stopped
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_sweep_job_returns_report(self, services) -> None:
        scheduler = ReconciliationScheduler(services.reconciliation)
        result = await scheduler._run_sweep()
        assert result["gapCount"] == 0
        assert SWEEP_JOB_ID == "reconciliation_sweep"

    @pytest.mark.asyncio
    async def test_sweep_failure_is_logged(self, services, monkeypatch, caplog) -> None:
        async def broken_sweep(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(services.reconciliation, "sweep", broken_sweep)
        caplog.set_level(logging.ERROR)
        scheduler = ReconciliationScheduler(services.reconciliation)

        assert await scheduler._run_sweep() is None
        assert "Reconciliation sweep failed" in caplog.text
