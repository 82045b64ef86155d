import time
import threading
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor, as_completed

from logging_setup import get_logger
from crown_client import map_market
from settlement import WagerRecord, PENDING, CONFIRMED, CANCELLED, find_unclaimed_wager
from errors import CrownError, BetRejected, LineConflict

logger = get_logger('crown_betting')

LINE_CONFLICTED = "line_conflicted"
ACCOUNT_UNAVAILABLE = "account_unavailable"
ODDS_BELOW_MINIMUM = "odds_below_minimum"
BET_REJECTED = "bet_rejected"
INTERNAL_ERROR = "internal_error"


class BetOrder:
    """
    One bet to place on a match.

    market/selection/line are translated into the platform's wtype and
    chose_team unless both are given explicitly. min_odds, when set, rejects
    the bet for an account whose current odds dropped below it.
    """

    def __init__(self, match_id, stake, market=None, selection=None, odds=None, min_odds=None,
                 line=None, wtype=None, chose_team=None):
        if float(stake) <= 0:
            raise ValueError("stake must be positive")
        self.match_id = str(match_id)
        self.stake = round(float(stake), 2)
        self.market = market
        self.selection = selection
        self.odds = odds
        self.min_odds = min_odds
        self.line = line
        self.wtype = wtype
        self.chose_team = chose_team

    def platform_market(self):
        return map_market(self.market, self.selection, self.line, self.wtype, self.chose_team)

    def __repr__(self):
        return f"BetOrder(match={self.match_id!r}, market={self.market!r}, selection={self.selection!r}, stake={self.stake})"


class BetResult:
    def __init__(self, account_id, accepted, ticket_id=None, odds=None, reason=None, code=None,
                 message=None, record_id=None):
        self.account_id = account_id
        self.accepted = accepted
        self.ticket_id = ticket_id
        self.odds = odds
        self.reason = reason
        self.code = code
        self.message = message
        self.record_id = record_id

    def to_dict(self):
        return dict(self.__dict__)

    def __repr__(self):
        if self.accepted:
            return f"BetResult(account={self.account_id!r}, accepted, ticket={self.ticket_id!r})"
        return f"BetResult(account={self.account_id!r}, rejected, reason={self.reason!r})"


def select_line_exclusive(accounts, held=None):
    """
    Keep the first account seen for each line key.

    held maps line keys already taken on the match to the account holding
    them; accounts on those lines are conflicted too.

    Returns (selected, conflicted) where conflicted is a list of
    (account, holder) pairs, holder being the account that kept the line.
    """
    holders = dict(held or {})
    selected = []
    conflicted = []
    for account in accounts:
        holder = holders.get(account.line_key)
        if holder is None:
            holders[account.line_key] = account
            selected.append(account)
        else:
            conflicted.append((account, holder))
    return selected, conflicted


class BetEngine:
    """
    Dispatches one order to many accounts.

    Line exclusivity is decided up front against the lines already
    holding a bet on the match (ledger records that are not cancelled, plus
    dispatches still in flight), then each selected account runs on
    its own worker: ensure a session, optionally preview odds, submit, and
    record a WagerRecord. A failing account never affects its siblings.

    Parameters:
    - sessions: SessionManager
    - accounts: AccountStore
    - ledger: WagerLedger receiving one record per accepted bet
    - max_workers: thread pool size
    - confirm_attempts: wager list fetches used to find a ticket id the bet response omitted
    - confirm_delay: seconds to wait before each of those fetches
    """

    def __init__(self, sessions, accounts, ledger, max_workers=10, confirm_attempts=3, confirm_delay=2.0):
        self.sessions = sessions
        self.accounts = accounts
        self.ledger = ledger
        self.max_workers = max(1, int(max_workers))
        self.confirm_attempts = confirm_attempts
        self.confirm_delay = confirm_delay
        self.__lines_lock = threading.Lock()
        self.__reserved = {}

    def place_bets(self, match_id, order, account_ids):
        """
        Place order on match_id for every account in account_ids.

        Returns:
        - dict with "results" (BetResult per account, in request order),
          "accepted" and "rejected" counts
        """
        ordered = []
        for account_id in account_ids:
            if account_id not in ordered:
                ordered.append(account_id)

        results = {}
        available = []
        for account_id in ordered:
            account = self.accounts.get(account_id)
            if account is None or not account.enabled:
                results[account_id] = BetResult(account_id, False, reason=ACCOUNT_UNAVAILABLE,
                                                message="account is unknown or disabled")
                continue
            available.append(account)

        match_key = str(match_id)
        with self.__lines_lock:
            selected, conflicted = select_line_exclusive(available, self.lines_in_use(match_key))
            for account in selected:
                self.__reserved[(match_key, account.line_key)] = account

        for account, holder in conflicted:
            conflict = LineConflict(f"line {account.line_key} already used by account {holder.account_id}",
                                    account.account_id, line_key=account.line_key)
            logger.info(f"🚧 {conflict}")
            results[account.account_id] = BetResult(account.account_id, False, reason=conflict.reason,
                                                    message=conflict.message)

        logger.info(f"🎯 Placing {order} on match {match_id} with {len(selected)} accounts "
                    f"({len(conflicted)} line conflicts)")

        try:
            if selected:
                with ThreadPoolExecutor(max_workers=min(self.max_workers, len(selected))) as executor:
                    futures = {executor.submit(self.place_for_account, match_id, order, account): account
                               for account in selected}
                    for future in as_completed(futures):
                        account = futures[future]
                        try:
                            results[account.account_id] = future.result()
                        except Exception as e:
                            logger.error(f"Worker error for account {account.account_id}: {e}")
                            results[account.account_id] = BetResult(account.account_id, False,
                                                                    reason=INTERNAL_ERROR, message=str(e))
        finally:
            with self.__lines_lock:
                for account in selected:
                    self.__reserved.pop((match_key, account.line_key), None)

        ordered_results = [results[account_id] for account_id in ordered]
        accepted = sum(1 for r in ordered_results if r.accepted)
        logger.info(f"📋 Match {match_id}: {accepted} accepted, {len(ordered_results) - accepted} rejected")
        return {
            "match_id": str(match_id),
            "results": ordered_results,
            "accepted": accepted,
            "rejected": len(ordered_results) - accepted,
        }

    def lines_in_use(self, match_id):
        """Line key -> holding account for every line with a live or settled bet on match_id"""
        held = {}
        for (reserved_match, line_key), account in self.__reserved.items():
            if reserved_match == match_id:
                held[line_key] = account
        for record in self.ledger.records():
            if str(record.match_id) != match_id or record.status == CANCELLED:
                continue
            account = self.accounts.get(record.account_id)
            if account is not None:
                held.setdefault(account.line_key, account)
        return held

    def place_for_account(self, match_id, order, account):
        """Submit order for one account and return its BetResult"""
        wtype, chose_team, line = order.platform_market()
        platform_stake = account.platform_stake(order.stake)

        def submit(handle):
            client = handle.client
            quote = None
            if order.min_odds is not None:
                quote = client.get_odds(match_id, wtype, chose_team, force=True)
                current = quote.get("ioratio")
                if current is not None and current < order.min_odds:
                    raise BetRejected(f"odds moved to {current}, below minimum {order.min_odds}",
                                      account.account_id, code=ODDS_BELOW_MINIMUM)
            return client.place_bet(
                match_id, wtype, chose_team, platform_stake,
                min_odds=order.min_odds,
                ioratio=quote.get("ioratio") if quote else None,
                ratio=quote.get("ratio") if quote else None,
                con=quote.get("con") if quote else None,
            )

        try:
            placed = self.sessions.run_with_session(account.account_id, submit)
        except BetRejected as e:
            reason = ODDS_BELOW_MINIMUM if e.code == ODDS_BELOW_MINIMUM else BET_REJECTED
            logger.warning(f"❌ Account {account.account_id}: {e.message}")
            return BetResult(account.account_id, False, reason=reason, code=e.code, message=e.message)
        except CrownError as e:
            logger.error(f"❌ Account {account.account_id} could not bet: {e}")
            return BetResult(account.account_id, False, reason=e.reason, message=e.message)

        record = WagerRecord(
            account.account_id, match_id, order.stake, platform_stake,
            odds=placed.get("odds"), market=order.market, selection=order.selection,
            wtype=wtype, chose_team=chose_team, line=line,
            status=PENDING,
        )
        ticket_id = placed.get("ticket_id")
        if ticket_id and self.ledger.find_by_ticket(ticket_id) is None:
            record.ticket_id = ticket_id
            record.status = CONFIRMED
            record.confirmed_at = time.time()
        self.ledger.add(record)
        self.ledger.add_transaction(record.record_id, "stake", order.stake)

        if record.ticket_id is None:
            self.__confirm_ticket(account, record)

        logger.info(f"✅ Account {account.account_id}: bet placed on {match_id} "
                    f"(ticket {record.ticket_id or 'pending'}, odds {record.odds})")
        return BetResult(account.account_id, True, ticket_id=record.ticket_id, odds=record.odds,
                         record_id=record.record_id)

    def __confirm_ticket(self, account, record):
        """Look for the new ticket in today's wager list, matching on stake"""
        today = datetime.now().strftime("%Y-%m-%d")
        for attempt in range(1, self.confirm_attempts + 1):
            if self.confirm_delay:
                time.sleep(self.confirm_delay)
            try:
                wagers = self.sessions.run_with_session(account.account_id,
                                                        lambda handle: handle.client.get_wagers(today))
            except CrownError as e:
                logger.warning(f"Ticket lookup {attempt}/{self.confirm_attempts} failed for account "
                               f"{account.account_id}: {e}")
                continue
            wager = find_unclaimed_wager(self.ledger, wagers, record.platform_stake)
            if wager is not None and self.ledger.attach_ticket(record, wager["ticket_id"]):
                logger.info(f"🎫 Account {account.account_id}: ticket {wager['ticket_id']} found on lookup {attempt}")
                return True
        logger.info(f"Ticket for record {record.record_id} not found yet, leaving it to settlement sync")
        return False
