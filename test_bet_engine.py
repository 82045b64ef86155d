#!/usr/bin/env python3
"""
Tests for multi-account bet dispatch: line exclusivity, minimum odds,
failure isolation and ledger bookkeeping.
"""

import logging

import pytest

from accounts import AccountCredential, AccountStore
from bet_engine import (
    BetEngine,
    BetOrder,
    select_line_exclusive,
    LINE_CONFLICTED,
    ACCOUNT_UNAVAILABLE,
    ODDS_BELOW_MINIMUM,
    BET_REJECTED,
    INTERNAL_ERROR,
)
from settlement import WagerLedger, PENDING, CONFIRMED, CANCELLED
from errors import BetRejected, AuthenticationFailed

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class FakeBetClient:
    def __init__(self, odds=0.95, outcome=None, wagers=None):
        self.odds = odds
        self.outcome = outcome if outcome is not None else {"ticket_id": "1000001", "odds": odds}
        self.wagers = wagers or []
        self.bets = []
        self.quotes = 0

    def get_odds(self, gid, wtype="RM", chose_team="C", gtype="FT", force=False):
        self.quotes += 1
        return {"ioratio": self.odds, "ratio": "2000", "con": "0"}

    def place_bet(self, gid, wtype, chose_team, gold, min_odds=None, ioratio=None, ratio=None, con=None):
        self.bets.append({"gid": gid, "wtype": wtype, "chose_team": chose_team, "gold": gold})
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return dict(self.outcome)

    def get_wagers(self, date=None):
        return list(self.wagers)


class FakeHandle:
    def __init__(self, client):
        self.client = client


class FakeSessions:
    def __init__(self, clients, failures=None):
        self.clients = clients
        self.failures = failures or {}

    def run_with_session(self, account_id, operation):
        if account_id in self.failures:
            raise self.failures[account_id]
        return operation(FakeHandle(self.clients[account_id]))


def make_engine(clients, accounts=None, failures=None):
    accounts = accounts or [
        AccountCredential("A1", "alpha01", "pw123456", line_key="L1"),
        AccountCredential("A2", "alpha02", "pw123456", line_key="L1"),
        AccountCredential("A3", "bravo01", "pw123456", line_key="L2"),
        AccountCredential("A4", "delta01", "pw123456", line_key="L4", enabled=False),
    ]
    store = AccountStore(config_file=None, accounts=accounts)
    ledger = WagerLedger()
    engine = BetEngine(FakeSessions(clients, failures), store, ledger, max_workers=4, confirm_delay=0)
    return engine, ledger


def by_account(outcome):
    return {r.account_id: r for r in outcome["results"]}


def test_line_exclusivity_keeps_first_account():
    clients = {"A1": FakeBetClient(), "A2": FakeBetClient()}
    engine, _ = make_engine(clients)

    outcome = engine.place_bets("M1", BetOrder("M1", 50, "moneyline", "home"), ["A1", "A2"])
    results = by_account(outcome)

    assert outcome["accepted"] == 1 and outcome["rejected"] == 1
    assert results["A1"].accepted
    assert results["A2"].reason == LINE_CONFLICTED
    assert clients["A2"].bets == []


def test_select_line_exclusive_reports_holder():
    a1 = AccountCredential("A1", "alpha01", "pw", line_key="L1")
    a2 = AccountCredential("A2", "alpha02", "pw", line_key="L1")
    a3 = AccountCredential("A3", "bravo01", "pw", line_key="L2")
    selected, conflicted = select_line_exclusive([a1, a2, a3])
    assert selected == [a1, a3]
    assert conflicted == [(a2, a1)]


def test_select_line_exclusive_respects_held_lines():
    a1 = AccountCredential("A1", "alpha01", "pw", line_key="L1")
    a2 = AccountCredential("A2", "alpha02", "pw", line_key="L1")
    a3 = AccountCredential("A3", "bravo01", "pw", line_key="L2")
    selected, conflicted = select_line_exclusive([a2, a3], held={"L1": a1})
    assert selected == [a3]
    assert conflicted == [(a2, a1)]


def test_line_stays_taken_across_dispatches():
    clients = {
        "A1": FakeBetClient(),
        "A2": FakeBetClient(outcome={"ticket_id": "1000002", "odds": 0.95}),
        "A3": FakeBetClient(outcome={"ticket_id": "1000003", "odds": 0.95}),
    }
    engine, _ = make_engine(clients)

    assert by_account(engine.place_bets("M1", BetOrder("M1", 50), ["A1"]))["A1"].accepted
    results = by_account(engine.place_bets("M1", BetOrder("M1", 50), ["A2", "A3"]))

    assert results["A2"].reason == LINE_CONFLICTED
    assert "A1" in results["A2"].message
    assert clients["A2"].bets == []
    assert results["A3"].accepted
    assert by_account(engine.place_bets("M2", BetOrder("M2", 50), ["A2"]))["A2"].accepted


def test_cancelled_or_rejected_bets_free_the_line():
    clients = {
        "A1": FakeBetClient(),
        "A2": FakeBetClient(outcome={"ticket_id": "1000002", "odds": 0.95}),
        "A3": FakeBetClient(outcome=BetRejected("closed", "A3", code="555")),
    }
    engine, ledger = make_engine(clients)

    engine.place_bets("M1", BetOrder("M1", 50), ["A1"])
    record = ledger.records("A1")[0]
    record.status = CANCELLED
    ledger.update(record)
    assert by_account(engine.place_bets("M1", BetOrder("M1", 50), ["A2"]))["A2"].accepted

    assert not by_account(engine.place_bets("M3", BetOrder("M3", 50), ["A3"]))["A3"].accepted
    assert engine.lines_in_use("M3") == {}


def test_unavailable_accounts_and_duplicates():
    clients = {"A3": FakeBetClient()}
    engine, _ = make_engine(clients)

    outcome = engine.place_bets("M1", BetOrder("M1", 20), ["A3", "A4", "ghost", "A3"])
    assert [r.account_id for r in outcome["results"]] == ["A3", "A4", "ghost"]
    results = by_account(outcome)
    assert results["A3"].accepted
    assert results["A4"].reason == ACCOUNT_UNAVAILABLE
    assert results["ghost"].reason == ACCOUNT_UNAVAILABLE
    assert len(clients["A3"].bets) == 1


def test_minimum_odds_rejects_before_submitting():
    clients = {"A1": FakeBetClient(odds=0.80)}
    engine, ledger = make_engine(clients)

    order = BetOrder("M1", 50, "handicap", "home", line="0/0.5", min_odds=0.9)
    result = by_account(engine.place_bets("M1", order, ["A1"]))["A1"]

    assert not result.accepted
    assert result.reason == ODDS_BELOW_MINIMUM
    assert clients["A1"].bets == []
    assert ledger.records() == []


def test_one_failure_does_not_affect_siblings():
    clients = {
        "A1": FakeBetClient(outcome=BetRejected("Insufficient balance", "A1", code="1X003")),
        "A3": FakeBetClient(),
    }
    engine, ledger = make_engine(clients)

    outcome = engine.place_bets("M1", BetOrder("M1", 30), ["A1", "A3"])
    results = by_account(outcome)

    assert results["A1"].reason == BET_REJECTED
    assert results["A1"].code == "1X003"
    assert results["A3"].accepted
    assert [r.account_id for r in ledger.records()] == ["A3"]


def test_session_failure_is_reported_per_account():
    clients = {"A1": FakeBetClient(), "A3": FakeBetClient()}
    engine, _ = make_engine(clients, failures={"A1": AuthenticationFailed("wrong password", "A1")})

    results = by_account(engine.place_bets("M1", BetOrder("M1", 30), ["A1", "A3"]))
    assert results["A1"].reason == "authentication_failed"
    assert results["A3"].accepted


def test_unexpected_worker_error_is_contained():
    clients = {"A1": FakeBetClient(outcome=RuntimeError("boom")), "A3": FakeBetClient()}
    engine, _ = make_engine(clients)

    results = by_account(engine.place_bets("M1", BetOrder("M1", 30), ["A1", "A3"]))
    assert results["A1"].reason == INTERNAL_ERROR
    assert results["A3"].accepted


def test_accepted_bet_is_recorded_with_platform_stake():
    accounts = [AccountCredential("A1", "alpha01", "pw123456", discount=0.8)]
    clients = {"A1": FakeBetClient(outcome={"ticket_id": "2000002", "odds": 0.92})}
    engine, ledger = make_engine(clients, accounts=accounts)

    order = BetOrder("M1", 40, "over_under", "over", line="2.5")
    result = by_account(engine.place_bets("M1", order, ["A1"]))["A1"]

    assert result.ticket_id == "2000002"
    assert clients["A1"].bets[0] == {"gid": "M1", "wtype": "ROU", "chose_team": "C", "gold": 50.0}
    record = ledger.get(result.record_id)
    assert record.status == CONFIRMED
    assert record.stake == 40.0 and record.platform_stake == 50.0
    assert record.line == "2.5"
    assert ledger.transactions(record.record_id, "stake")[0]["amount"] == 40.0


def test_missing_ticket_is_found_in_wager_list():
    wagers = [
        {"ticket_id": "OU3000001", "gold": 10.0, "win_gold": None},
        {"ticket_id": "OU3000002", "gold": 50.0, "win_gold": None},
    ]
    clients = {"A1": FakeBetClient(outcome={"ticket_id": None, "odds": 0.9}, wagers=wagers)}
    engine, ledger = make_engine(clients)

    result = by_account(engine.place_bets("M1", BetOrder("M1", 50), ["A1"]))["A1"]
    assert result.accepted
    assert result.ticket_id == "OU3000002"
    assert ledger.get(result.record_id).status == CONFIRMED


def test_ticket_left_pending_when_not_listed_yet():
    clients = {"A1": FakeBetClient(outcome={"ticket_id": None, "odds": 0.9})}
    engine, ledger = make_engine(clients)

    result = by_account(engine.place_bets("M1", BetOrder("M1", 50), ["A1"]))["A1"]
    assert result.accepted and result.ticket_id is None
    assert ledger.get(result.record_id).status == PENDING


def test_order_validation():
    with pytest.raises(ValueError):
        BetOrder("M1", 0)
    assert BetOrder("M1", 10, "handicap", "away", line="-0.5").platform_market() == ("RE", "C", "-0.5")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
