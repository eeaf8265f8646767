# delegation.py
"""
TikShot — DelegationGateway.

Moves a round's account between the base ledger and the ephemeral rollup:
  delegate(round_id) -> base ledger hands the Round PDA to the rollup
  commit(round_id)   -> rollup commits + undelegates it back to base
Nothing is remembered between the two calls beyond the round id the caller passes.
"""

from __future__ import annotations

from gateway import AccountGateway, short_sig


class DelegationGateway:
    def __init__(self, base: AccountGateway, ephemeral: AccountGateway):
        self.base = base
        self.ephemeral = ephemeral

    async def delegate(self, round_id: int) -> str:
        sig = await self.base.delegate_round(round_id)
        print(f"[DELEGATION] Round {round_id} delegated. Sig: {short_sig(sig)}", flush=True)
        return sig

    async def commit(self, round_id: int) -> str:
        sig = await self.ephemeral.commit_round(round_id)
        print(f"[DELEGATION] Round {round_id} committed to base. Sig: {short_sig(sig)}", flush=True)
        return sig
