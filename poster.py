# poster.py
"""
TikShot — PriceAttestationPoster.

Bridges a fresh Pyth price onto the base ledger for exactly one consuming
instruction (start_round / settle_round):

  1. fetch   latest signed update from Hermes
  2. post    PriceUpdateV2 account(s), one throwaway keypair each
             (no compute budget ixs: the atomic post is already near the tx size limit)
  3. consume the start/settle ix, with compute limit + priority fee
  4. close   reclaim rent, also after a failed consume; failure only costs
             the deposit and never stops the round

Post and consume are separate transactions because the consumer needs the
address created by the post step.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, List, Optional
import random

from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from config import settings
from errors import CleanupFailed, SubmissionFailed
from gateway import AccountGateway, short_sig
from oracle import OracleFeedClient, PriceUpdate
import pyth


@dataclass(frozen=True)
class PostResult:
    price: PriceUpdate
    price_update_account: Pubkey
    post_signature: str
    consume_signature: str
    close_signature: Optional[str] = None


class PriceAttestationPoster:
    def __init__(
        self,
        gateway: AccountGateway,
        oracle: OracleFeedClient,
        compute_units: int = settings.COMPUTE_UNIT_LIMIT,
        priority_micro_lamports: int = settings.COMPUTE_UNIT_PRICE,
        num_signatures: int = settings.PYTH_SIGNATURES,
        treasury_id: Optional[int] = None,
        new_keypair: Callable[[], Keypair] = Keypair,
    ):
        self.gateway = gateway
        self.oracle = oracle
        self.compute_units = compute_units
        self.priority_micro_lamports = priority_micro_lamports
        self.num_signatures = num_signatures
        self.treasury_id = treasury_id
        self._new_keypair = new_keypair

    def _treasury(self) -> int:
        # receiver spreads fee deposits across 256 treasuries
        return self.treasury_id if self.treasury_id is not None else random.randrange(256)

    def build_post_instructions(self, update: PriceUpdate):
        """(post instructions, throwaway signers, account for our feed, all posted accounts)."""
        payer = self.gateway.authority_pubkey
        treasury_id = self._treasury()
        ixs: List[Instruction] = []
        signers: List[Keypair] = []
        feed_account: Optional[Pubkey] = None

        for blob in update.binary:
            acc = pyth.parse_accumulator_update(blob)
            vaa = pyth.trim_signatures(acc.vaa, self.num_signatures)
            for merkle in acc.updates:
                kp = self._new_keypair()
                ixs.append(pyth.post_update_atomic_ix(payer, kp.pubkey(), vaa, merkle, treasury_id))
                signers.append(kp)
                if pyth.message_feed_id(merkle.message) == self.oracle.feed_id and feed_account is None:
                    feed_account = kp.pubkey()

        if feed_account is None:
            raise SubmissionFailed(f"price update carries no message for feed {self.oracle.feed_id}")
        return ixs, signers, feed_account, [s.pubkey() for s in signers]

    async def post_and_execute(self, build_consumer: Callable[[Pubkey], Instruction]) -> PostResult:
        update = await self.oracle.latest_update()
        post_ixs, signers, feed_account, posted = self.build_post_instructions(update)

        post_sig = await self.gateway.send(post_ixs, signers=signers, skip_preflight=True)
        print(f"[POSTER] Price {update.price}e{update.expo} posted. Sig: {short_sig(post_sig)}", flush=True)

        # once the post has landed its accounts are closed whether or not the consumer succeeds
        close_sig = None
        try:
            consume_sig = await self.gateway.send(
                [build_consumer(feed_account)],
                compute_units=self.compute_units,
                priority_micro_lamports=self.priority_micro_lamports,
            )
            print(f"[POSTER] Instruction executed. Sig: {short_sig(consume_sig)}", flush=True)
        finally:
            try:
                close_sig = await self._close(posted)
            except CleanupFailed as e:
                print(f"[POSTER] {e} (rent forfeited, continuing)", flush=True)

        return PostResult(update, feed_account, post_sig, consume_sig, close_sig)

    async def _close(self, accounts: List[Pubkey]) -> str:
        payer = self.gateway.authority_pubkey
        try:
            return await self.gateway.send(
                [pyth.reclaim_rent_ix(payer, a) for a in accounts],
                skip_preflight=True,
            )
        except Exception as e:
            raise CleanupFailed(f"closing {len(accounts)} price update account(s) failed: {e}") from e
