import random

import pytest
from solders.keypair import Keypair

from errors import RoundNotSettled
from payouts import (
    calculate_payout,
    compute_fee,
    find_player_bet,
    format_credits,
    settlement_summary,
)
from program import Bet, Round, RoundResult, RoundStatus, DEFAULT_PUBKEY


def _round(result, bets, status=RoundStatus.SETTLED):
    return Round(
        round_id=7, start_ts=0, lock_ts=115, end_ts=120,
        start_price=100, end_price=100, price_expo=-8,
        total_up=sum(b.up_amount for b in bets),
        total_down=sum(b.down_amount for b in bets),
        status=status, result=result, bets=tuple(bets),
    )


def _pk():
    return Keypair().pubkey()


def _pool_700_300(result):
    a = Bet(_pk(), up_amount=100)
    b = Bet(_pk(), up_amount=600)
    c = Bet(_pk(), down_amount=300)
    return _round(result, [a, b, c]), a, b, c


class TestScenarios:
    def test_up_winner_gets_pro_rata_share_of_pool_after_fee(self):
        rnd, a, _, _ = _pool_700_300(RoundResult.UP)
        assert compute_fee(rnd.total_pool, 100) == 10
        assert calculate_payout(rnd, a, 100) == 141

    def test_tie_refunds_both_sides_regardless_of_fee(self):
        bettor = Bet(_pk(), up_amount=100, down_amount=50)
        rnd = _round(RoundResult.TIE, [bettor, Bet(_pk(), up_amount=600, down_amount=250)])
        for fee_bps in (0, 100, 2_500, 10_000):
            assert calculate_payout(rnd, bettor, fee_bps) == 150

    def test_down_result_pays_nothing_to_up_only_bettor(self):
        rnd, a, _, _ = _pool_700_300(RoundResult.DOWN)
        assert calculate_payout(rnd, a, 100) == 0

    def test_down_winner_takes_pool_after_fee(self):
        rnd, _, _, c = _pool_700_300(RoundResult.DOWN)
        assert calculate_payout(rnd, c, 100) == 990

    def test_hedged_bettor_only_paid_on_winning_side(self):
        hedged = Bet(_pk(), up_amount=100, down_amount=100)
        rnd = _round(RoundResult.UP, [hedged, Bet(_pk(), down_amount=200)])
        # pool 400, fee 4, up side is all theirs
        assert calculate_payout(rnd, hedged, 100) == 396

    def test_pending_round_is_rejected(self):
        rnd, a, _, _ = _pool_700_300(RoundResult.PENDING)
        with pytest.raises(RoundNotSettled):
            calculate_payout(rnd, a, 100)


class TestProperties:
    def test_fee_never_exceeds_pool(self):
        rng = random.Random(1)
        for _ in range(500):
            pool = rng.randrange(0, 10**15)
            bps = rng.randrange(0, 10_001)
            assert 0 <= compute_fee(pool, bps) <= pool
        assert compute_fee(12345, 10_000) == 12345

    def test_fee_bps_outside_range_rejected(self):
        with pytest.raises(ValueError):
            compute_fee(100, 10_001)
        with pytest.raises(ValueError):
            compute_fee(100, -1)

    @pytest.mark.parametrize("result", [RoundResult.UP, RoundResult.DOWN])
    def test_winners_never_paid_more_than_pool_after_fee(self, result):
        rng = random.Random(int(result))
        for _ in range(200):
            bets = [
                Bet(_pk(), up_amount=rng.choice([0, rng.randrange(1, 10**12)]),
                    down_amount=rng.choice([0, rng.randrange(1, 10**12)]))
                for _ in range(rng.randrange(1, 9))
            ]
            rnd = _round(result, bets)
            side_total = rnd.total_up if result == RoundResult.UP else rnd.total_down
            if side_total == 0:
                continue
            fee_bps = rng.randrange(0, 10_001)
            paid = [calculate_payout(rnd, b, fee_bps) for b in bets]
            assert sum(paid) <= rnd.total_pool - compute_fee(rnd.total_pool, fee_bps)
            for b, p in zip(bets, paid):
                stake = b.up_amount if result == RoundResult.UP else b.down_amount
                if stake == 0:
                    assert p == 0

    def test_tie_refunds_every_bettor_in_full(self):
        bets = [Bet(_pk(), up_amount=i * 7, down_amount=i * 3) for i in range(1, 9)]
        rnd = _round(RoundResult.TIE, bets)
        assert [calculate_payout(rnd, b, 500) for b in bets] == [b.total for b in bets]


class TestSummary:
    def test_summary_accounts_for_fee_and_dust(self):
        rnd, a, b, c = _pool_700_300(RoundResult.UP)
        s = settlement_summary(rnd, 100)
        assert s.fee == 10
        assert s.payouts[str(a.player)] == 141
        assert s.payouts[str(b.player)] == 848
        assert s.payouts[str(c.player)] == 0
        assert s.total_paid == 989
        assert s.house_remainder == 11

    def test_summary_of_tie_has_no_fee(self):
        rnd, *_ = _pool_700_300(RoundResult.TIE)
        s = settlement_summary(rnd, 100)
        assert s.fee == 0
        assert s.total_paid == 1000

    def test_summary_skips_claimed_entries(self):
        live = Bet(_pk(), up_amount=100)
        rnd = _round(RoundResult.UP, [live, Bet(DEFAULT_PUBKEY, up_amount=100)])
        assert list(settlement_summary(rnd, 0).payouts) == [str(live.player)]

    def test_summary_of_pending_round_raises(self):
        rnd, *_ = _pool_700_300(RoundResult.PENDING)
        with pytest.raises(RoundNotSettled):
            settlement_summary(rnd, 100)


def test_find_player_bet():
    rnd, a, _, _ = _pool_700_300(RoundResult.UP)
    assert find_player_bet(rnd, a.player) == a
    assert find_player_bet(rnd, _pk()) is None


@pytest.mark.parametrize("amount,expected", [
    (0, "0.00"),
    (1_000_000_000_000, "1000.00"),
    (1_234_567_891, "1.23"),
    (999_999_999, "0.99"),
    (-1_500_000_000, "-1.50"),
])
def test_format_credits(amount, expected):
    assert format_credits(amount) == expected
