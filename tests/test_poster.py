import asyncio

import pytest
from solders.keypair import Keypair

from errors import OracleUnavailable, SubmissionFailed
from poster import PriceAttestationPoster
import program as prog
import pyth
from tests.fakes import FEED, OTHER_FEED, make_price_update


class RecordingGateway:
    program_id = prog.PROGRAM_ID

    def __init__(self, fail_on=None):
        self.authority = Keypair()
        self.authority_pubkey = self.authority.pubkey()
        self.sends = []
        self.fail_on = fail_on or set()

    async def send(self, instructions, signers=(), compute_units=None,
                   priority_micro_lamports=None, skip_preflight=False):
        n = len(self.sends)
        self.sends.append({
            "ixs": list(instructions),
            "signers": list(signers),
            "compute_units": compute_units,
            "priority": priority_micro_lamports,
            "skip_preflight": skip_preflight,
        })
        if n in self.fail_on:
            raise SubmissionFailed(f"send #{n} failed")
        return f"sig-{n}"

    def start_round(self, rid, price_update):
        return prog.start_round_ix(self.authority_pubkey, rid, price_update)


class StubOracle:
    feed_id = FEED

    def __init__(self, update=None, exc=None):
        self.update = update
        self.exc = exc

    async def latest_update(self):
        if self.exc:
            raise self.exc
        return self.update


def _poster(gw, oracle):
    return PriceAttestationPoster(gw, oracle, compute_units=200_000, priority_micro_lamports=50_000,
                                  num_signatures=5, treasury_id=3)


def test_post_consume_close_sequence():
    gw = RecordingGateway()
    poster = _poster(gw, StubOracle(make_price_update()))
    res = asyncio.run(poster.post_and_execute(lambda pu: gw.start_round(0, pu)))

    assert len(gw.sends) == 3
    post, consume, close = gw.sends

    # post: receiver ix, throwaway signer, no budget directives
    assert [ix.program_id for ix in post["ixs"]] == [pyth.RECEIVER_PROGRAM_ID]
    assert len(post["signers"]) == 1
    assert post["compute_units"] is None and post["priority"] is None
    assert post["skip_preflight"] is True

    # consume: references the freshly posted account, with priority fee
    assert res.price_update_account == post["signers"][0].pubkey()
    assert consume["ixs"][0].accounts[2].pubkey == res.price_update_account
    assert consume["compute_units"] == 200_000
    assert consume["priority"] == 50_000
    assert consume["signers"] == []

    # close: reclaim the same account
    assert close["ixs"][0].accounts[1].pubkey == res.price_update_account
    assert (res.post_signature, res.consume_signature, res.close_signature) == ("sig-0", "sig-1", "sig-2")


def test_vaa_is_trimmed_before_posting():
    gw = RecordingGateway()
    poster = _poster(gw, StubOracle(make_price_update()))
    ixs, _, _, _ = poster.build_post_instructions(make_price_update())
    data = bytes(ixs[0].data)
    # u32 vaa length after the discriminator; 13 signatures trimmed down to 5
    vaa_len = int.from_bytes(data[8:12], "little")
    assert data[12 + 5] == 5
    assert vaa_len == 6 + 5 * 66 + len(b"vaa-body")


def test_multi_feed_update_picks_our_feed():
    gw = RecordingGateway()
    poster = _poster(gw, StubOracle())
    ixs, signers, feed_account, posted = poster.build_post_instructions(make_price_update(feeds=(OTHER_FEED, FEED)))
    assert len(ixs) == 2
    assert feed_account == signers[1].pubkey()
    assert posted == [s.pubkey() for s in signers]


def test_update_without_our_feed_fails():
    gw = RecordingGateway()
    poster = _poster(gw, StubOracle())
    with pytest.raises(SubmissionFailed):
        poster.build_post_instructions(make_price_update(feeds=(OTHER_FEED,)))


def test_close_failure_is_not_fatal():
    gw = RecordingGateway(fail_on={2})
    poster = _poster(gw, StubOracle(make_price_update()))
    res = asyncio.run(poster.post_and_execute(lambda pu: gw.start_round(0, pu)))
    assert res.consume_signature == "sig-1"
    assert res.close_signature is None


def test_consume_failure_propagates_after_closing_posted_accounts():
    gw = RecordingGateway(fail_on={1})
    poster = _poster(gw, StubOracle(make_price_update()))
    with pytest.raises(SubmissionFailed, match="send #1"):
        asyncio.run(poster.post_and_execute(lambda pu: gw.start_round(0, pu)))
    assert len(gw.sends) == 3
    posted = [s.pubkey() for s in gw.sends[0]["signers"]]
    closed = [ix.accounts[1].pubkey for ix in gw.sends[2]["ixs"]]
    assert closed == posted


def test_consume_error_wins_over_close_error():
    gw = RecordingGateway(fail_on={1, 2})
    poster = _poster(gw, StubOracle(make_price_update()))
    with pytest.raises(SubmissionFailed, match="send #1"):
        asyncio.run(poster.post_and_execute(lambda pu: gw.start_round(0, pu)))
    assert len(gw.sends) == 3


def test_failed_post_closes_nothing():
    gw = RecordingGateway(fail_on={0})
    poster = _poster(gw, StubOracle(make_price_update()))
    with pytest.raises(SubmissionFailed, match="send #0"):
        asyncio.run(poster.post_and_execute(lambda pu: gw.start_round(0, pu)))
    assert len(gw.sends) == 1


def test_oracle_failure_sends_nothing():
    gw = RecordingGateway()
    poster = _poster(gw, StubOracle(exc=OracleUnavailable("hermes down")))
    with pytest.raises(OracleUnavailable):
        asyncio.run(poster.post_and_execute(lambda pu: gw.start_round(0, pu)))
    assert gw.sends == []
