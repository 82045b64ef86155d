#!/usr/bin/env python3
import sys
import json
import time
import signal
import argparse
import traceback

from logging_setup import get_logger
from settings import Settings
from accounts import AccountStore
from site_registry import SiteRegistry
from session_manager import SessionManager
from settlement import WagerLedger, SettlementReconciler, SettlementScheduler
from bet_engine import BetEngine, BetOrder
from errors import CrownError

logger = get_logger('crown_betting')


class CrownService:
    """Wires the registry, sessions, bet engine and settlement together"""

    def __init__(self, settings=None):
        self.settings = settings or Settings()
        self.accounts = AccountStore(self.settings.config_file)
        self.registry = SiteRegistry(
            sites=self.settings.sites or None,
            default_site=self.settings.base_url,
            failure_threshold=self.settings.failure_threshold,
            cooldown_seconds=self.settings.site_cooldown,
            health_check_interval=self.settings.health_check_interval,
        )
        self.sessions = SessionManager(self.accounts, self.registry, self.settings)
        self.ledger = WagerLedger(self.settings.ledger_file)
        self.bet_engine = BetEngine(self.sessions, self.accounts, self.ledger,
                                    max_workers=self.settings.bet_max_workers)
        self.reconciler = SettlementReconciler(self.ledger, self.sessions, self.accounts,
                                               missing_threshold=self.settings.missing_ticket_threshold)
        self.scheduler = SettlementScheduler(self.reconciler, interval=self.settings.settlement_interval)

    def resolve_accounts(self, raw_ids):
        """Map command line ids onto store ids; no ids means every enabled account"""
        if not raw_ids:
            return [a.account_id for a in self.accounts.enabled()]
        by_text = {str(a.account_id): a.account_id for a in self.accounts.all()}
        return [by_text.get(str(raw), raw) for raw in raw_ids]

    def start(self):
        self.registry.start_health_check()
        resumed = self.sessions.resume_online_accounts()
        if resumed:
            logger.info(f"Resumed sessions: {resumed}")
        self.sessions.start_sweeper()
        self.scheduler.start()

    def cleanup(self):
        self.scheduler.stop()
        self.registry.stop_health_check()
        self.sessions.shutdown()


def print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def cmd_login(service, args):
    failures = 0
    for account_id in service.resolve_accounts(args.accounts):
        try:
            handle = service.sessions.ensure_session(account_id)
            print(f"✅ {account_id}: {handle.state}")
        except CrownError as e:
            failures += 1
            print(f"❌ {account_id}: {e.reason}: {e}")
    return 1 if failures else 0


def cmd_bet(service, args):
    order = BetOrder(
        args.match, args.stake,
        market=args.market, selection=args.selection, line=args.line,
        min_odds=args.min_odds, wtype=args.wtype, chose_team=args.chose_team,
    )
    outcome = service.bet_engine.place_bets(args.match, order, service.resolve_accounts(args.accounts))
    print_json({
        "match_id": outcome["match_id"],
        "accepted": outcome["accepted"],
        "rejected": outcome["rejected"],
        "results": [r.to_dict() for r in outcome["results"]],
    })
    return 0 if outcome["accepted"] else 1


def cmd_sync(service, args):
    account_ids = service.resolve_accounts(args.accounts) if args.accounts else None
    print_json(service.reconciler.sync_settlements(account_ids))
    return 0


def cmd_balance(service, args):
    for account_id in service.resolve_accounts(args.accounts):
        try:
            balance = service.sessions.run_with_session(account_id, lambda h: h.client.get_balance(force=True))
            print(f"💰 {account_id}: {balance}")
        except CrownError as e:
            print(f"❌ {account_id}: {e}")
    return 0


def cmd_matches(service, args):
    account_ids = service.resolve_accounts([args.account] if args.account else None)
    if not account_ids:
        print("❌ No enabled account to fetch matches with")
        return 1
    account_id = account_ids[0]
    matches = service.sessions.run_with_session(
        account_id, lambda h: h.client.get_matches(showtype=args.showtype, rtype=args.rtype)
    )
    print_json(matches)
    return 0


def cmd_history(service, args):
    failures = 0
    for account_id in service.resolve_accounts(args.accounts):
        try:
            history = service.sessions.run_with_session(
                account_id, lambda h: h.client.get_history(args.start, args.end)
            )
            print_json({"account_id": account_id, "history": history})
        except CrownError as e:
            failures += 1
            print(f"❌ {account_id}: {e}")
    return 1 if failures else 0


def cmd_sites(service, args):
    if args.switch:
        if not service.registry.switch_to(args.switch):
            return 1
    if args.check:
        service.registry.trigger_health_check()
    print_json(service.registry.to_dict())
    return 0


def cmd_run(service, args):
    def signal_handler(sig, frame):
        """Gracefully shut down when CTRL+C is pressed"""
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    service.start()
    print("Crown engine running. Press Ctrl+C to exit.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down...")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Crown account sessions, betting and settlement")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Establish sessions for accounts")
    login.add_argument("accounts", nargs="*", help="Account ids (default: all enabled)")

    bet = sub.add_parser("bet", help="Place one order across accounts")
    bet.add_argument("--match", required=True, help="Platform match id (gid)")
    bet.add_argument("--stake", required=True, type=float)
    bet.add_argument("--market", default="moneyline", help="moneyline, handicap or over_under")
    bet.add_argument("--selection", default="home", help="home, away, draw, over or under")
    bet.add_argument("--line", help='Handicap or total line, e.g. "0/0.5"')
    bet.add_argument("--min-odds", type=float)
    bet.add_argument("--wtype", help="Explicit platform wtype")
    bet.add_argument("--chose-team", help="Explicit platform chose_team")
    bet.add_argument("--accounts", nargs="+", required=True)

    sync = sub.add_parser("sync", help="Reconcile open wagers with the platform")
    sync.add_argument("accounts", nargs="*")

    balance = sub.add_parser("balance", help="Show balance or credit")
    balance.add_argument("accounts", nargs="*")

    matches = sub.add_parser("matches", help="List matches from the game list")
    matches.add_argument("--account", help="Account whose session fetches the list (default: first enabled)")
    matches.add_argument("--showtype", default="live", help="live, today or early")
    matches.add_argument("--rtype", default="rb", help="Platform rtype, rb for in-play")

    history = sub.add_parser("history", help="Show daily bet and win/loss summaries")
    history.add_argument("accounts", nargs="*")
    history.add_argument("--start", help="YYYY-MM-DD (default: today)")
    history.add_argument("--end", help="YYYY-MM-DD (default: today)")

    sites = sub.add_parser("sites", help="Show or manage mirror sites")
    sites.add_argument("--check", action="store_true", help="Probe every site now")
    sites.add_argument("--switch", help="Make this url the current site")

    sub.add_parser("run", help="Run health checks, session sweep and settlement until interrupted")
    return parser


COMMANDS = {
    "login": cmd_login,
    "bet": cmd_bet,
    "sync": cmd_sync,
    "balance": cmd_balance,
    "matches": cmd_matches,
    "history": cmd_history,
    "sites": cmd_sites,
    "run": cmd_run,
}


def main(argv=None):
    args = build_parser().parse_args(argv)
    service = None
    try:
        service = CrownService()
        return COMMANDS[args.command](service, args)
    except Exception as e:
        print(f"Fatal error: {e}")
        traceback.print_exc()
        return 1
    finally:
        if service is not None:
            service.cleanup()


if __name__ == "__main__":
    sys.exit(main())
