# scheduler.py
"""
TikShot — round crank.

Drives one round at a time through its whole life, forever:

  Idle -> Starting -> OpenDelegated -> Locking -> LockedCommitting -> Settling -> Settled -> Idle

The crank keeps no state of record. Every iteration starts by re-reading
Game.round_count from the base ledger, so after any failure it just backs off
and starts over from Idle.
"""

from __future__ import annotations
from enum import Enum
from typing import Awaitable, Callable, Optional
import asyncio
import traceback

from config import settings, Settings
from delegation import DelegationGateway
from errors import AccountNotFound, CrankError, InvalidTransition
from gateway import AccountGateway, load_keypair
from oracle import OracleFeedClient
from payouts import format_credits, settlement_summary
from poster import PriceAttestationPoster
import db as dbmod
import program as prog


class Phase(Enum):
    IDLE = "Idle"
    STARTING = "Starting"
    OPEN_DELEGATED = "OpenDelegated"
    LOCKING = "Locking"
    LOCKED_COMMITTING = "LockedCommitting"
    SETTLING = "Settling"
    SETTLED = "Settled"


NEXT_PHASE = {
    Phase.IDLE: Phase.STARTING,
    Phase.STARTING: Phase.OPEN_DELEGATED,
    Phase.OPEN_DELEGATED: Phase.LOCKING,
    Phase.LOCKING: Phase.LOCKED_COMMITTING,
    Phase.LOCKED_COMMITTING: Phase.SETTLING,
    Phase.SETTLING: Phase.SETTLED,
    Phase.SETTLED: Phase.IDLE,
}


class RoundOrchestrator:
    def __init__(
        self,
        base: AccountGateway,
        ephemeral: AccountGateway,
        poster: PriceAttestationPoster,
        delegation: DelegationGateway,
        history=None,
        config: Settings = settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base = base
        self.ephemeral = ephemeral
        self.poster = poster
        self.delegation = delegation
        self.history = history
        self.config = config
        self.sleep = sleep
        self.phase = Phase.IDLE
        self.round_id: Optional[int] = None   # for log lines only

    def advance(self, to: Phase) -> None:
        if NEXT_PHASE[self.phase] != to:
            raise InvalidTransition(f"{self.phase.value} -> {to.value}")
        self.phase = to

    async def ensure_game(self) -> prog.Game:
        """Read the Game; a missing Game is the one-time signal to initialize it."""
        try:
            return await self.base.fetch_game()
        except AccountNotFound:
            print(f"[CRANK] Game not initialized. Initializing with {self.config.INIT_FEE_BPS} bps fee...", flush=True)
            await self.base.init_game(self.config.INIT_FEE_BPS)
            print("[CRANK] Game initialized!", flush=True)
            return await self.base.fetch_game()

    async def run_round(self) -> prog.Round:
        """One full round. Any exception leaves the phase where it failed; the caller restarts."""
        self.phase = Phase.IDLE
        game = await self.ensure_game()
        rid = game.round_count
        self.round_id = rid
        print(f"\n[CRANK] --- Round {rid} ---", flush=True)

        # 1. start on base with a fresh price
        self.advance(Phase.STARTING)
        if await self.base.account_exists(prog.round_address(rid, self.base.program_id)):
            # start already landed before a restart; only an Open round can be picked up
            existing = await self.base.fetch_round(rid)
            if existing.status != prog.RoundStatus.OPEN:
                raise CrankError(f"round {rid} already exists with status {existing.status.name}; not resuming")
            print(f"[CRANK] Round {rid} already exists, skipping start", flush=True)
        else:
            print("[CRANK] Fetching fresh Pyth price & starting round...", flush=True)
            await self.poster.post_and_execute(lambda pu: self.base.start_round(rid, pu))
            print(f"[CRANK] Round {rid} started.", flush=True)

        # 2. hand the round to the ephemeral rollup for betting
        await self.delegation.delegate(rid)
        self.advance(Phase.OPEN_DELEGATED)
        print(f"[CRANK] Betting open for {self.config.BETTING_WINDOW_S}s...", flush=True)
        await self.sleep(self.config.BETTING_WINDOW_S)

        # 3. lock on the rollup, let in-flight bets land
        self.advance(Phase.LOCKING)
        await self.ephemeral.lock_round(rid)
        print("[CRANK] Round locked.", flush=True)
        await self.sleep(self.config.LOCK_DURATION_S)

        # 4. commit back to base, wait for it to be visible there
        self.advance(Phase.LOCKED_COMMITTING)
        await self.delegation.commit(rid)
        await self.sleep(self.config.COMMIT_WAIT_S)

        # 5. settle on base with a second fresh price
        self.advance(Phase.SETTLING)
        print("[CRANK] Fetching fresh Pyth price & settling round...", flush=True)
        await self.poster.post_and_execute(lambda pu: self.base.settle_round(rid, pu))

        rnd = await self.base.fetch_round(rid)
        self.advance(Phase.SETTLED)
        self._log_settled(rnd, game.fee_bps)
        await self._record(rnd, game.fee_bps)
        return rnd

    def _log_settled(self, rnd: prog.Round, fee_bps: int) -> None:
        print(
            f"[CRANK] Round {rnd.round_id} settled! "
            f"Start: {rnd.start_price} | End: {rnd.end_price} | "
            f"Result: {prog.decode_result(rnd.result)} | "
            f"Pool: {rnd.total_up} UP / {rnd.total_down} DOWN",
            flush=True,
        )
        if rnd.is_settled and rnd.bets:
            summary = settlement_summary(rnd, fee_bps)
            print(
                f"[CRANK] Round {rnd.round_id} owes {format_credits(summary.total_paid)} credits "
                f"to {len(summary.payouts)} bettor(s), fee {format_credits(summary.fee)}",
                flush=True,
            )

    async def _record(self, rnd: prog.Round, fee_bps: int) -> None:
        if self.history is None:
            return
        try:
            await dbmod.record_round(self.history, rnd, fee_bps)
        except Exception as e:
            print(f"[CRANK] history write failed for round {rnd.round_id}: {e}", flush=True)

    async def _note_error(self, ex: BaseException) -> None:
        if self.history is None:
            return
        try:
            await dbmod.kv_set(self.history, "crank:last_error", f"round={self.round_id} phase={self.phase.value} {ex}")
        except Exception:
            traceback.print_exc()

    async def run_forever(self, iterations: Optional[int] = None) -> None:
        """Loop run_round(); on any failure log, back off, and restart from Idle."""
        n = 0
        while iterations is None or n < iterations:
            n += 1
            try:
                await self.run_round()
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                print(
                    f"[CRANK] error in round {self.round_id} during {self.phase.value}: {ex}",
                    flush=True,
                )
                logs = getattr(ex, "logs", None)
                if logs:
                    print("[CRANK] Logs:\n" + "\n".join(logs), flush=True)
                traceback.print_exc()
                await self._note_error(ex)
                print(f"[CRANK] Retrying in {self.config.CRANK_BACKOFF_S} seconds...", flush=True)
                await self.sleep(self.config.CRANK_BACKOFF_S)


# =========================================================
# Wiring
# =========================================================
async def build_crank(config: Settings = settings, history=None):
    """Construct long-lived clients once; returns (orchestrator, closer)."""
    authority = load_keypair(config.ANCHOR_WALLET, config.AUTHORITY_SECRET)
    program_id = prog.PROGRAM_ID
    base = await AccountGateway(config.SOLANA_RPC, authority, "base", program_id).open()
    ephemeral = await AccountGateway(config.ER_RPC, authority, "ephemeral", program_id).open()
    oracle = OracleFeedClient(config.HERMES_URL, config.PYTH_FEED_ID, config.HERMES_TIMEOUT_S)
    poster = PriceAttestationPoster(
        base, oracle,
        compute_units=config.COMPUTE_UNIT_LIMIT,
        priority_micro_lamports=config.COMPUTE_UNIT_PRICE,
        num_signatures=config.PYTH_SIGNATURES,
    )
    crank = RoundOrchestrator(base, ephemeral, poster, DelegationGateway(base, ephemeral), history, config)

    async def close() -> None:
        await oracle.close()
        await ephemeral.close()
        await base.close()

    return crank, close


async def main():
    print("=== TikShot Crank Starting ===", flush=True)
    print(f"Base RPC: {settings.SOLANA_RPC}", flush=True)
    print(f"ER RPC:   {settings.ER_RPC}", flush=True)
    print(f"Program:  {prog.PROGRAM_ID}", flush=True)
    history = await dbmod.connect(settings.DB_PATH)
    crank, close = await build_crank(settings, history)
    print(f"Authority: {crank.base.authority_pubkey}", flush=True)
    print(f"Game PDA: {prog.game_address()}", flush=True)
    try:
        await crank.run_forever()
    finally:
        await close()
        await history.close()


if __name__ == "__main__":
    asyncio.run(main())
