import asyncio
import dataclasses

import pytest
from solders.keypair import Keypair

import db as dbmod
from config import Settings
from delegation import DelegationGateway
from errors import CrankError, InvalidTransition, OracleUnavailable, SubmissionFailed
from program import Bet, RoundResult, RoundStatus
from scheduler import NEXT_PHASE, Phase, RoundOrchestrator
from tests.fakes import FakeBase, FakeEphemeral, FakeLedger, FakePoster, Sleeps

CONFIG = Settings(_env_file=None)


def _crank(ledger, history=None):
    base, eph = FakeBase(ledger), FakeEphemeral(ledger)
    sleeps = Sleeps()
    crank = RoundOrchestrator(
        base, eph, FakePoster(ledger), DelegationGateway(base, eph),
        history=history, config=CONFIG, sleep=sleeps,
    )
    return crank, sleeps


class TestPhases:
    def test_phase_order_is_a_single_cycle(self):
        seen, p = [], Phase.IDLE
        for _ in range(len(Phase)):
            seen.append(p)
            p = NEXT_PHASE[p]
        assert p == Phase.IDLE
        assert set(seen) == set(Phase)

    def test_settled_only_leads_to_idle(self):
        ledger = FakeLedger()
        crank, _ = _crank(ledger)
        crank.phase = Phase.SETTLED
        for bad in (Phase.STARTING, Phase.OPEN_DELEGATED, Phase.SETTLING, Phase.SETTLED):
            with pytest.raises(InvalidTransition):
                crank.advance(bad)
        crank.advance(Phase.IDLE)
        crank.advance(Phase.STARTING)

    def test_phases_cannot_be_skipped(self):
        crank, _ = _crank(FakeLedger())
        with pytest.raises(InvalidTransition):
            crank.advance(Phase.LOCKING)


class TestRound:
    def test_full_round_sequence(self):
        ledger = FakeLedger()
        crank, sleeps = _crank(ledger)
        rnd = asyncio.run(crank.run_round())

        assert [c[0] for c in ledger.calls] == [
            "start_round", "delegate_round", "lock_round", "commit_round", "settle_round",
        ]
        assert all(c[1] == 0 for c in ledger.calls)
        assert sleeps.calls == [115, 5, 2]
        assert crank.phase == Phase.SETTLED
        assert rnd.status == RoundStatus.SETTLED
        assert rnd.result == RoundResult.UP
        assert (rnd.start_price, rnd.end_price) == (100, 110)
        assert ledger.game.round_count == 1

    def test_consecutive_rounds_use_next_id(self):
        ledger = FakeLedger()
        crank, _ = _crank(ledger)
        asyncio.run(crank.run_forever(iterations=3))
        assert ledger.ops("settle_round") == [0, 1, 2]
        assert ledger.game.round_count == 3

    def test_uninitialized_game_is_created_first(self):
        ledger = FakeLedger(initialized=False)
        crank, _ = _crank(ledger)
        asyncio.run(crank.run_round())
        assert ledger.calls[0] == ("init_game", 100)
        assert ledger.ops("settle_round") == [0]

    def test_existing_round_is_not_started_twice(self):
        ledger = FakeLedger()
        ledger.start(0, 100)
        # stale counter: the start landed but the counter read predates it
        ledger.game = ledger.game.__class__(ledger.game.authority, ledger.game.fee_bps, 0)
        crank, _ = _crank(ledger)
        asyncio.run(crank.run_round())
        assert ledger.ops("start_round") == [0]
        assert ledger.ops("settle_round") == [0]

    def test_existing_locked_round_is_not_delegated(self):
        ledger = FakeLedger()
        ledger.start(0, 100)
        ledger.lock(0)
        ledger.game = dataclasses.replace(ledger.game, round_count=0)
        crank, sleeps = _crank(ledger)
        asyncio.run(crank.run_forever(iterations=1))
        assert ledger.ops("delegate_round") == []
        assert ledger.ops("start_round") == [0]
        assert crank.phase == Phase.STARTING
        assert sleeps.calls == [5]

    def test_existing_settled_round_raises(self):
        ledger = FakeLedger()
        crank, _ = _crank(ledger)
        asyncio.run(crank.run_round())
        ledger.game = dataclasses.replace(ledger.game, round_count=0)
        with pytest.raises(CrankError, match="SETTLED"):
            asyncio.run(crank.run_round())
        assert ledger.ops("delegate_round") == [0]


class TestFailures:
    def test_crash_after_start_restarts_from_fresh_counter(self):
        ledger = FakeLedger()
        ledger.fail_once["delegate_round"] = SubmissionFailed("ER unreachable")
        crank, sleeps = _crank(ledger)
        asyncio.run(crank.run_forever(iterations=2))

        assert ledger.ops("start_round") == [0, 1]
        assert ledger.ops("settle_round") == [1]
        assert ledger.rounds[0].status == RoundStatus.OPEN
        assert ledger.rounds[1].status == RoundStatus.SETTLED
        assert sleeps.calls == [5, 115, 5, 2]

    def test_oracle_outage_backs_off_and_retries_same_round(self):
        ledger = FakeLedger()
        ledger.fail_once["oracle"] = OracleUnavailable("hermes down")
        crank, sleeps = _crank(ledger)
        asyncio.run(crank.run_forever(iterations=2))
        assert ledger.ops("start_round") == [0]
        assert ledger.ops("settle_round") == [0]
        assert sleeps.calls[0] == 5

    def test_failure_mid_round_is_not_resumed(self):
        ledger = FakeLedger()
        ledger.fail_once["lock_round"] = SubmissionFailed("lock rejected")
        crank, sleeps = _crank(ledger)
        asyncio.run(crank.run_forever(iterations=2))
        # round 0 abandoned after its lock failed; round 1 runs cleanly
        assert ledger.ops("lock_round") == [1]
        assert ledger.ops("settle_round") == [1]
        assert sleeps.calls == [115, 5, 115, 5, 2]

    def test_settled_round_never_resettled(self):
        ledger = FakeLedger()
        crank, _ = _crank(ledger)
        asyncio.run(crank.run_round())
        ledger.fail_once["commit_round"] = SubmissionFailed("boom")
        asyncio.run(crank.run_forever(iterations=2))
        settles = ledger.ops("settle_round")
        assert settles.count(0) == 1
        assert settles == [0, 2]


def test_settled_round_is_recorded_in_history():
    ledger = FakeLedger()
    ledger.bets = [Bet(Keypair().pubkey(), up_amount=700), Bet(Keypair().pubkey(), down_amount=300)]

    async def go():
        conn = await dbmod.connect(":memory:")
        try:
            crank, _ = _crank(ledger, history=conn)
            await crank.run_round()
            row = await dbmod.get_round(conn, 0)
            last = await dbmod.kv_get(conn, "crank:last_round")
            return row, last
        finally:
            await conn.close()

    row, last = asyncio.run(go())
    assert row["result"] == "UP"
    assert (row["total_up"], row["total_down"], row["fee"]) == (700, 300, 10)
    assert last == "0"


def test_failure_is_noted_in_history():
    ledger = FakeLedger()
    ledger.fail_once["delegate_round"] = SubmissionFailed("ER unreachable")

    async def go():
        conn = await dbmod.connect(":memory:")
        try:
            crank, _ = _crank(ledger, history=conn)
            await crank.run_forever(iterations=1)
            return await dbmod.kv_get(conn, "crank:last_error")
        finally:
            await conn.close()

    note = asyncio.run(go())
    assert "round=0" in note and "phase=Starting" in note
