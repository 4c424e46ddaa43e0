"""
Tests for prize calculation and B2C payouts.
"""
import pytest

from pesarena.exceptions import AuthError, ConflictError, ValidationError
from pesarena.models.callbacks import parse_b2c_result
from pesarena.models.payouts import PayoutStatus, PayoutWinners
from pesarena.services.payout_service import PayoutService, calculate_prizes

WINNERS = PayoutWinners(
    first_place="0711111111",
    second_place="0722222222",
    third_place="0733333333",
)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def payouts(mpesa, session_factory, settings, sleeps) -> PayoutService:
    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    delayed = settings.model_copy(update={"payout_request_delay_seconds": 2.0})
    return PayoutService(mpesa, session_factory, delayed, sleep=record_sleep)


class TestCalculatePrizes:

    def test_even_pool(self) -> None:
        prizes = calculate_prizes(10000)

        assert (prizes.first_place, prizes.second_place, prizes.third_place) == (6000, 2500, 1000)
        assert prizes.arena_fee == 500

    def test_rounding_remainder_goes_to_fee(self) -> None:
        prizes = calculate_prizes(999)

        assert (prizes.first_place, prizes.second_place, prizes.third_place) == (599, 250, 100)
        assert prizes.arena_fee == 50
        assert prizes.first_place + prizes.second_place + prizes.third_place + prizes.arena_fee == 999

    @pytest.mark.parametrize("pool", [0, -100])
    def test_non_positive_pool(self, pool: int) -> None:
        with pytest.raises(ValidationError):
            calculate_prizes(pool)


class TestPayOut:

    @pytest.mark.asyncio
    async def test_pays_three_winners_in_order(self, payouts, fake_daraja, sleeps) -> None:
        summary = await payouts.pay_out("T1", 10000, WINNERS)

        assert summary.payouts_initiated == 3
        assert summary.payouts_failed == 0
        assert [r.position for r in summary.results] == ["1st Place", "2nd Place", "3rd Place"]
        assert [r.conversation_id for r in summary.results] == ["AG_1", "AG_2", "AG_3"]
        assert all(r.id.startswith("PAY_") for r in summary.results)

        assert [b["Amount"] for b in fake_daraja.b2c_bodies] == [6000, 2500, 1000]
        assert fake_daraja.b2c_bodies[0]["Remarks"] == "PES ARENA Tournament 1st Prize"
        assert fake_daraja.b2c_bodies[0]["ResultURL"] == "https://arena.test/api/mpesa/payout-callback"
        assert sleeps == [2.0, 2.0]

        # one token for the whole batch
        assert fake_daraja.paths().count("/oauth/v1/generate") == 1

    @pytest.mark.asyncio
    async def test_rejected_transfer_does_not_stop_the_rest(self, payouts, fake_daraja) -> None:
        fake_daraja.b2c_failures = {2}

        summary = await payouts.pay_out("T1", 10000, WINNERS)

        assert summary.payouts_initiated == 2
        assert summary.payouts_failed == 1
        rejected = summary.results[1]
        assert rejected.status is PayoutStatus.REJECTED
        assert rejected.conversation_id is None
        assert rejected.result_desc == "Bad Request - Invalid PartyB"
        assert len(fake_daraja.b2c_bodies) == 3

    @pytest.mark.asyncio
    async def test_invalid_winner_phone_sends_nothing(self, payouts, fake_daraja) -> None:
        winners = WINNERS.model_copy(update={"third_place": "12345"})

        with pytest.raises(ValidationError):
            await payouts.pay_out("T1", 10000, winners)

        assert fake_daraja.requests == []
        assert await payouts.list_for_tournament("T1") == []

    @pytest.mark.asyncio
    async def test_pool_too_small_for_every_prize(self, payouts, fake_daraja) -> None:
        with pytest.raises(ValidationError):
            await payouts.pay_out("T1", 4, WINNERS)
        assert fake_daraja.requests == []

    @pytest.mark.asyncio
    async def test_second_payout_for_tournament_is_refused(self, payouts, fake_daraja) -> None:
        await payouts.pay_out("T1", 10000, WINNERS)

        with pytest.raises(ConflictError):
            await payouts.pay_out("T1", 10000, WINNERS)

        assert len(fake_daraja.b2c_bodies) == 3
        assert len(await payouts.list_for_tournament("T1")) == 3

    @pytest.mark.asyncio
    async def test_payout_can_rerun_after_every_transfer_was_rejected(self, payouts, fake_daraja) -> None:
        fake_daraja.b2c_failures = {1, 2, 3}
        first = await payouts.pay_out("T1", 10000, WINNERS)
        assert first.payouts_initiated == 0

        fake_daraja.b2c_failures = set()
        second = await payouts.pay_out("T1", 10000, WINNERS)
        assert second.payouts_initiated == 3

    @pytest.mark.asyncio
    async def test_token_failure_sends_nothing(self, payouts, fake_daraja) -> None:
        fake_daraja.token_response = (401, {"errorMessage": "Invalid credentials"})

        with pytest.raises(AuthError):
            await payouts.pay_out("T1", 10000, WINNERS)
        assert fake_daraja.b2c_bodies == []


class TestRecordResult:

    @pytest.mark.asyncio
    async def test_success_applied_once(self, payouts, make_b2c_result) -> None:
        await payouts.pay_out("T1", 10000, WINNERS)

        record = await payouts.record_result(parse_b2c_result(make_b2c_result("AG_1")))
        assert record.status is PayoutStatus.COMPLETED
        assert record.receipt_reference == "NLJ41HAY6Q"
        assert record.resolved_at is not None

        late_failure = await payouts.record_result(parse_b2c_result(make_b2c_result("AG_1", result_code=2001)))
        assert late_failure.status is PayoutStatus.COMPLETED
        assert late_failure.resolved_at == record.resolved_at

    @pytest.mark.asyncio
    async def test_failure_result(self, payouts, make_b2c_result) -> None:
        await payouts.pay_out("T1", 10000, WINNERS)

        record = await payouts.record_result(parse_b2c_result(make_b2c_result("AG_2", result_code=2001)))

        assert record.status is PayoutStatus.FAILED
        assert record.receipt_reference is None
        assert record.result_desc == "The balance is insufficient for the transaction."

    @pytest.mark.asyncio
    async def test_unknown_conversation_id(self, payouts, make_b2c_result) -> None:
        assert await payouts.record_result(parse_b2c_result(make_b2c_result("AG_404"))) is None

    @pytest.mark.asyncio
    async def test_list_for_tournament(self, payouts) -> None:
        await payouts.pay_out("T1", 10000, WINNERS)
        await payouts.pay_out("T2", 3000, WINNERS)

        listed = await payouts.list_for_tournament("T1")
        assert [p.amount for p in listed] == [6000, 2500, 1000]
