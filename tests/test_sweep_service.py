"""Tests for the daily sweep."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import RecordingNotifier, utc
from models.enums import AgreementStatus, NotificationKind, PaymentRecordStatus
from services.reminder_service import ReminderService
from services.sweep_service import DailySweepService

APRIL_16 = date(2024, 4, 16)


@pytest.fixture
def sweep(session_factory, notifier):
    return DailySweepService(session_factory, notifier, concurrency=1)


class TestDailySweep:
    """Tests for DailySweepService.run."""

    @pytest.mark.asyncio
    async def test_generates_marks_overdue_and_reminds(
        self, billing, sweep, notifier, agreement_data, march_20
    ):
        agreement = await billing.create_agreement(agreement_data, now=march_20)

        result = await sweep.run(as_of=APRIL_16, now=utc(2024, 4, 16, 1, 0))

        assert result.as_of == APRIL_16
        assert result.processed == 1
        assert result.generated == 1
        assert result.overdue_transitioned == 1
        assert result.reminders_sent == 1
        assert result.failures == []
        assert notifier.kinds() == [NotificationKind.OVERDUE]
        assert notifier.calls[0]["period_key"] == "2024-04"
        assert notifier.calls[0]["context"] == {"days": 1}

        ledger = await billing.get_ledger(agreement.id)
        records = {r.period_key: r for r in ledger.agreement.records}
        assert records["2024-04"].status == PaymentRecordStatus.OVERDUE
        assert records["2024-05"].status == PaymentRecordStatus.PENDING
        assert ledger.agreement.last_reminder_sent_at is not None

    @pytest.mark.asyncio
    async def test_second_run_same_day_sends_nothing(
        self, billing, sweep, notifier, agreement_data, march_20
    ):
        await billing.create_agreement(agreement_data, now=march_20)
        await sweep.run(as_of=APRIL_16, now=utc(2024, 4, 16, 1, 0))

        again = await sweep.run(as_of=APRIL_16, now=utc(2024, 4, 16, 13, 0))

        assert again.processed == 1
        assert again.generated == 0
        assert again.overdue_transitioned == 0
        assert again.reminders_sent == 0
        assert len(notifier.calls) == 1

    @pytest.mark.asyncio
    async def test_upcoming_reminder_three_days_out(
        self, billing, sweep, notifier, agreement_data, march_20
    ):
        await billing.create_agreement(agreement_data, now=march_20)

        result = await sweep.run(as_of=date(2024, 4, 12), now=utc(2024, 4, 12, 1, 0))

        # 2024-03 is exactly four weeks overdue on this day
        assert sorted(k.value for k in notifier.kinds()) == ["overdue", "upcoming_due"]
        assert result.reminders_sent == 2

    @pytest.mark.asyncio
    async def test_manual_reminder_does_not_silence_the_sweep(
        self, billing, sweep, notifier, agreement_data, march_20
    ):
        agreement = await billing.create_agreement(agreement_data, now=march_20)
        await billing.trigger_manual_reminder(agreement.id, now=utc(2024, 4, 12, 0, 30))

        result = await sweep.run(as_of=date(2024, 4, 12), now=utc(2024, 4, 12, 1, 0))

        assert result.reminders_sent == 2
        assert notifier.kinds()[0] == NotificationKind.CONSOLIDATED
        assert sorted(k.value for k in notifier.kinds()[1:]) == ["overdue", "upcoming_due"]

    @pytest.mark.asyncio
    async def test_catch_up_run_does_not_block_today(
        self, billing, sweep, notifier, agreement_data, march_20
    ):
        await billing.create_agreement(agreement_data, now=march_20)
        late_now = utc(2024, 4, 16, 1, 0)

        catch_up = await sweep.run(as_of=date(2024, 4, 15), now=late_now)
        today = await sweep.run(as_of=APRIL_16, now=late_now)

        # 2024-04 is due on the 15th; 2024-01 is thirteen weeks overdue that day
        assert catch_up.reminders_sent == 2
        assert NotificationKind.DUE_TODAY in notifier.kinds()[:2]
        assert today.reminders_sent == 1
        assert notifier.calls[-1]["period_key"] == "2024-04"
        assert notifier.calls[-1]["context"] == {"days": 1}

    @pytest.mark.asyncio
    async def test_earlier_day_after_a_later_run_sends_nothing(
        self, billing, sweep, notifier, agreement_data, march_20
    ):
        await billing.create_agreement(agreement_data, now=march_20)
        await sweep.run(as_of=APRIL_16, now=utc(2024, 4, 16, 1, 0))

        stale = await sweep.run(as_of=date(2024, 4, 15), now=utc(2024, 4, 16, 2, 0))

        assert stale.reminders_sent == 0
        assert len(notifier.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_delivery_is_counted(
        self, billing, session_factory, agreement_data, march_20
    ):
        await billing.create_agreement(agreement_data, now=march_20)
        failing = DailySweepService(session_factory, RecordingNotifier(succeed=False))

        result = await failing.run(as_of=APRIL_16, now=utc(2024, 4, 16, 1, 0))

        assert result.processed == 1
        assert result.reminders_sent == 0
        assert result.notification_failures == 1

    @pytest.mark.asyncio
    async def test_one_failing_agreement_does_not_stop_the_rest(
        self, billing, sweep, agreement_data, march_20, monkeypatch
    ):
        good = await billing.create_agreement(agreement_data, now=march_20)
        bad = await billing.create_agreement(agreement_data, now=march_20)
        real_evaluate = ReminderService.evaluate_locked

        def evaluate_locked(self, agreement, today, now):
            if agreement.id == bad.id:
                raise RuntimeError("boom")
            return real_evaluate(self, agreement, today, now)

        monkeypatch.setattr(ReminderService, "evaluate_locked", evaluate_locked)

        result = await sweep.run(as_of=APRIL_16, now=utc(2024, 4, 16, 1, 0))

        assert result.processed == 1
        assert [f.agreement_id for f in result.failures] == [bad.id]
        assert result.failures[0].error == "boom"

        good_ledger = await billing.get_ledger(good.id)
        bad_ledger = await billing.get_ledger(bad.id)
        assert len(good_ledger.agreement.records) == 5
        # rolled back: no May record on the failed agreement
        assert len(bad_ledger.agreement.records) == 4

    @pytest.mark.asyncio
    async def test_inactive_agreements_are_not_swept(
        self, billing, sweep, notifier, agreement_data, march_20
    ):
        agreement = await billing.create_agreement(agreement_data, now=march_20)
        await billing.update_status(agreement.id, AgreementStatus.ON_HOLD)

        result = await sweep.run(as_of=APRIL_16, now=utc(2024, 4, 16, 1, 0))

        assert result.processed == 0
        assert notifier.calls == []

    @pytest.mark.asyncio
    async def test_settled_agreement_past_end_date_completes(
        self, billing, sweep, agreement_data, march_20
    ):
        agreement_data["end_date"] = date(2024, 2, 28)
        agreement = await billing.create_agreement(agreement_data, now=march_20)
        await billing.record_manual_payment(agreement.id, Decimal("2000"), "Cash")

        result = await sweep.run(as_of=date(2024, 3, 21), now=utc(2024, 3, 21, 1, 0))

        assert result.completed == 1
        ledger = await billing.get_ledger(agreement.id)
        assert ledger.agreement.status == AgreementStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unsettled_agreement_past_end_date_stays_active(
        self, billing, sweep, agreement_data, march_20
    ):
        agreement_data["end_date"] = date(2024, 2, 28)
        agreement = await billing.create_agreement(agreement_data, now=march_20)

        result = await sweep.run(as_of=date(2024, 3, 21), now=utc(2024, 3, 21, 1, 0))

        assert result.completed == 0
        ledger = await billing.get_ledger(agreement.id)
        assert ledger.agreement.status == AgreementStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_facade_runs_the_sweep(self, billing, agreement_data, march_20):
        await billing.create_agreement(agreement_data, now=march_20)

        result = await billing.run_daily_sweep(as_of=APRIL_16, now=utc(2024, 4, 16, 1, 0))

        assert result.processed == 1
