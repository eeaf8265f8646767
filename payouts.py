# payouts.py
"""
TikShot — pari-mutuel payout engine.

Pure integer math shared by the crank (logging / history), the read API
(payout previews) and clients. Mirrors what the program credits on claim:
  - TIE  -> full refund of both sides, fee waived
  - UP   -> winners split (pool - fee) pro rata to their up stake
  - DOWN -> symmetric on the down stake
Every division floors, so winners can never be paid more than pool - fee.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from solders.pubkey import Pubkey

from errors import RoundNotSettled
from program import Bet, Round, RoundResult, CREDIT_DECIMALS, MAX_FEE_BPS

BPS_DENOMINATOR = 10_000


def compute_fee(total_pool: int, fee_bps: int) -> int:
    """floor(total_pool * fee_bps / 10000); never more than the pool."""
    if not 0 <= fee_bps <= MAX_FEE_BPS:
        raise ValueError(f"fee_bps must be within 0..{MAX_FEE_BPS} (got {fee_bps})")
    if total_pool < 0:
        raise ValueError("total_pool must be >= 0")
    return total_pool * fee_bps // BPS_DENOMINATOR


def calculate_payout(round_: Round, bet: Bet, fee_bps: int) -> int:
    """Credits owed to one bet entry of a settled round."""
    result = RoundResult(round_.result)

    if result == RoundResult.TIE:
        return bet.up_amount + bet.down_amount

    if result == RoundResult.UP:
        stake, side_total = bet.up_amount, round_.total_up
    elif result == RoundResult.DOWN:
        stake, side_total = bet.down_amount, round_.total_down
    else:
        raise RoundNotSettled(f"round {round_.round_id} has no result yet")

    if stake == 0:
        return 0
    pool_after_fee = round_.total_pool - compute_fee(round_.total_pool, fee_bps)
    return pool_after_fee * stake // side_total


def find_player_bet(round_: Round, wallet: Pubkey) -> Optional[Bet]:
    for bet in round_.bets:
        if bet.player == wallet:
            return bet
    return None


@dataclass(frozen=True)
class SettlementSummary:
    round_id: int
    result: RoundResult
    total_pool: int
    fee: int
    payouts: Dict[str, int]

    @property
    def total_paid(self) -> int:
        return sum(self.payouts.values())

    @property
    def house_remainder(self) -> int:
        """Pool left unallocated: the fee plus floor-division dust."""
        return self.total_pool - self.total_paid


def settlement_summary(round_: Round, fee_bps: int) -> SettlementSummary:
    """Payout of every (unclaimed) bet entry in a settled round."""
    result = RoundResult(round_.result)
    if result == RoundResult.PENDING:
        raise RoundNotSettled(f"round {round_.round_id} has no result yet")
    fee = 0 if result == RoundResult.TIE else compute_fee(round_.total_pool, fee_bps)
    payouts = {
        str(bet.player): calculate_payout(round_, bet, fee_bps)
        for bet in round_.bets
        if not bet.claimed
    }
    return SettlementSummary(round_.round_id, result, round_.total_pool, fee, payouts)


def split_credits(amount: int) -> Tuple[int, int]:
    """(whole credits, fractional base units)."""
    return divmod(int(amount), 10**CREDIT_DECIMALS)


def format_credits(amount: int) -> str:
    """Two-decimal display of a 10^9-scaled amount (truncates, never rounds up)."""
    sign = "-" if amount < 0 else ""
    whole, frac = split_credits(abs(amount))
    return f"{sign}{whole}.{frac // 10**(CREDIT_DECIMALS - 2):02d}"
