import os
import json
import time
import uuid
import threading
from datetime import datetime, timedelta
from concurrent.futures import ThreadPoolExecutor, as_completed

from logging_setup import get_logger
from crown_client import ticket_variants, VOID_PATTERN
from errors import CrownError

logger = get_logger('crown_settlement')

PENDING = "pending"
CONFIRMED = "confirmed"
SETTLED = "settled"
CANCELLED = "cancelled"
OPEN_STATUSES = (PENDING, CONFIRMED)
TERMINAL_STATUSES = (SETTLED, CANCELLED)

STAKE_TOLERANCE = 0.01


def stakes_match(a, b):
    return a is not None and b is not None and round(abs(float(a) - float(b)), 2) <= STAKE_TOLERANCE


def find_unclaimed_wager(ledger, wagers, stake, exclude=()):
    """
    First platform wager whose stake matches and whose ticket no record holds.

    Unsettled wagers are preferred since a fresh bet has not been settled yet.
    """
    pool = [
        w for w in wagers
        if w.get("ticket_id") and w["ticket_id"] not in exclude
        and stakes_match(w.get("gold"), stake) and ledger.find_by_ticket(w["ticket_id"]) is None
    ]
    pool.sort(key=lambda w: w.get("win_gold") is not None)
    return pool[0] if pool else None


class WagerRecord:
    """Local record of one submitted bet, mutated only by reconciliation"""

    def __init__(self, account_id, match_id, stake, platform_stake=None, record_id=None, ticket_id=None,
                 odds=None, market=None, selection=None, wtype=None, chose_team=None, line=None,
                 status=PENDING, result=None, payout=None, profit_loss=None, missing_count=0,
                 created_at=None, confirmed_at=None, settled_at=None):
        self.record_id = record_id or uuid.uuid4().hex
        self.account_id = account_id
        self.match_id = match_id
        self.stake = round(float(stake), 2)
        self.platform_stake = round(float(platform_stake if platform_stake is not None else stake), 2)
        self.ticket_id = ticket_id
        self.odds = odds
        self.market = market
        self.selection = selection
        self.wtype = wtype
        self.chose_team = chose_team
        self.line = line
        self.status = status
        self.result = result
        self.payout = payout
        self.profit_loss = profit_loss
        self.missing_count = missing_count
        self.created_at = created_at or time.time()
        self.confirmed_at = confirmed_at
        self.settled_at = settled_at

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data):
        return cls(**data)

    def __repr__(self):
        return f"WagerRecord(id={self.record_id!r}, account={self.account_id!r}, ticket={self.ticket_id!r}, status={self.status!r})"


class WagerLedger:
    """
    Wager records and money movements kept in one JSON file.

    A transaction is keyed by (record_id, type), so a stake, payout or refund
    is written at most once per record. path=None keeps everything in memory.
    """

    def __init__(self, path=None):
        self.path = path
        self.__lock = threading.RLock()
        self.__records = {}
        self.__transactions = {}
        self.__load()

    def __load(self):
        if not self.path:
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        except json.JSONDecodeError as e:
            raise ValueError(f"Ledger file {self.path} is not valid JSON: {e}")
        for item in data.get("records", []):
            record = WagerRecord.from_dict(item)
            self.__records[record.record_id] = record
        for item in data.get("transactions", []):
            self.__transactions[(item["record_id"], item["type"])] = item
        logger.info(f"Loaded {len(self.__records)} wager records from {self.path}")

    def __save(self):
        if not self.path:
            return
        data = {
            "records": [r.to_dict() for r in self.__records.values()],
            "transactions": list(self.__transactions.values()),
        }
        tmp_file = f"{self.path}.tmp"
        try:
            with open(tmp_file, "w") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_file, self.path)
        except OSError as e:
            logger.error(f"Error saving ledger to {self.path}: {e}")

    def add(self, record):
        with self.__lock:
            if record.ticket_id and self.find_by_ticket(record.ticket_id):
                raise ValueError(f"Ticket {record.ticket_id} is already recorded")
            self.__records[record.record_id] = record
            self.__save()
        return record

    def get(self, record_id):
        with self.__lock:
            return self.__records.get(record_id)

    def update(self, record):
        with self.__lock:
            self.__records[record.record_id] = record
            self.__save()

    def records(self, account_id=None, statuses=None):
        with self.__lock:
            return [
                r for r in self.__records.values()
                if (account_id is None or r.account_id == account_id)
                and (statuses is None or r.status in statuses)
            ]

    def find_by_ticket(self, ticket_id):
        """Match either spelling of the ticket (raw number or OU-prefixed)"""
        variants = set(ticket_variants(ticket_id))
        if not variants:
            return None
        with self.__lock:
            for record in self.__records.values():
                if record.ticket_id and variants.intersection(ticket_variants(record.ticket_id)):
                    return record
        return None

    def attach_ticket(self, record, ticket_id):
        """Claim a ticket for a record; False when another record already holds it"""
        with self.__lock:
            owner = self.find_by_ticket(ticket_id)
            if owner is not None and owner.record_id != record.record_id:
                return False
            record.ticket_id = ticket_id
            if record.status == PENDING:
                record.status = CONFIRMED
            record.confirmed_at = record.confirmed_at or time.time()
            self.__records[record.record_id] = record
            self.__save()
        return True

    def has_transaction(self, record_id, kind):
        with self.__lock:
            return (record_id, kind) in self.__transactions

    def add_transaction(self, record_id, kind, amount):
        """Record a money movement once; returns False when it already exists"""
        with self.__lock:
            key = (record_id, kind)
            if key in self.__transactions:
                return False
            self.__transactions[key] = {
                "record_id": record_id,
                "type": kind,
                "amount": round(float(amount), 2),
                "created_at": time.time(),
            }
            self.__save()
        return True

    def transactions(self, record_id=None, kind=None):
        with self.__lock:
            return [
                t for t in self.__transactions.values()
                if (record_id is None or t["record_id"] == record_id) and (kind is None or t["type"] == kind)
            ]


class SettlementReconciler:
    """
    Brings local wager records in line with the platform.

    For every account: ticketless open records are confirmed by matching an
    unclaimed platform wager with the same stake, then every open record with
    a ticket is looked up (wager list first, detail commands second) and
    settled or cancelled. A ticket the platform no longer knows is cancelled
    with a single refund once it has been missed missing_threshold times.

    Passes are serialized per account and terminal records are never touched,
    so running sync_settlements repeatedly or concurrently is safe.
    """

    def __init__(self, ledger, sessions, accounts, missing_threshold=1, max_workers=4, wager_days=2):
        self.ledger = ledger
        self.sessions = sessions
        self.accounts = accounts
        self.missing_threshold = max(1, int(missing_threshold))
        self.max_workers = max_workers
        self.wager_days = wager_days
        self.__locks = {}
        self.__locks_guard = threading.Lock()

    def __account_lock(self, account_id):
        with self.__locks_guard:
            lock = self.__locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self.__locks[account_id] = lock
            return lock

    def sync_settlements(self, account_ids=None):
        """Reconcile the given accounts (default: every account with open records)"""
        if account_ids is None:
            account_ids = sorted({r.account_id for r in self.ledger.records(statuses=OPEN_STATUSES)}, key=str)
        totals = {"accounts": 0, "confirmed": 0, "settled": 0, "cancelled": 0, "skipped": 0, "failed": 0}
        if not account_ids:
            return totals

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(account_ids))) as executor:
            futures = {executor.submit(self.sync_account, account_id): account_id for account_id in account_ids}
            for future in as_completed(futures):
                account_id = futures[future]
                totals["accounts"] += 1
                try:
                    stats = future.result()
                except CrownError as e:
                    logger.error(f"❌ Settlement sync failed for account {account_id}, will retry next pass: {e}")
                    totals["failed"] += 1
                    continue
                for key in ("confirmed", "settled", "cancelled", "skipped"):
                    totals[key] += stats[key]

        logger.info(f"📊 Settlement sync finished: {totals}")
        return totals

    def sync_account(self, account_id):
        stats = {"confirmed": 0, "settled": 0, "cancelled": 0, "skipped": 0}
        with self.__account_lock(account_id):
            open_records = self.ledger.records(account_id, OPEN_STATUSES)
            if not open_records:
                return stats

            wagers = self.sessions.run_with_session(account_id, self.__fetch_wagers)
            stats["confirmed"] = self.confirm_pending(account_id, wagers)

            index = {}
            for wager in wagers:
                for variant in ticket_variants(wager["ticket_id"]):
                    index[variant] = wager

            for record in self.ledger.records(account_id, OPEN_STATUSES):
                if not record.ticket_id:
                    stats["skipped"] += 1
                    continue
                outcome = self.__reconcile_record(record, index)
                stats[outcome] += 1
        return stats

    def __fetch_wagers(self, handle):
        wagers = {}
        today = datetime.now()
        for offset in range(self.wager_days):
            date = (today - timedelta(days=offset)).strftime("%Y-%m-%d")
            for wager in handle.client.get_wagers(date):
                wagers[wager["ticket_id"]] = wager
        return list(wagers.values())

    def confirm_pending(self, account_id, wagers):
        """Attach tickets to open ticketless records by stake; returns how many were confirmed"""
        records = [r for r in self.ledger.records(account_id, OPEN_STATUSES) if not r.ticket_id]
        if not records:
            return 0

        confirmed = 0
        used = set()
        for record in sorted(records, key=lambda r: r.created_at):
            candidate = find_unclaimed_wager(self.ledger, wagers, record.platform_stake, exclude=used)
            if candidate is None:
                continue
            if self.ledger.attach_ticket(record, candidate["ticket_id"]):
                used.add(candidate["ticket_id"])
                confirmed += 1
                logger.info(f"🎫 Record {record.record_id} confirmed as ticket {candidate['ticket_id']}")
        return confirmed

    def __reconcile_record(self, record, index):
        wager = None
        for variant in ticket_variants(record.ticket_id):
            wager = index.get(variant)
            if wager is not None:
                break

        if wager is None:
            wager = self.sessions.run_with_session(
                record.account_id, lambda handle: self.__lookup_detail(handle, record.ticket_id)
            )

        if wager is None:
            record.missing_count += 1
            if record.missing_count < self.missing_threshold:
                self.ledger.update(record)
                logger.warning(f"⚠️  Ticket {record.ticket_id} not found ({record.missing_count}/{self.missing_threshold})")
                return "skipped"
            logger.warning(f"🚫 Ticket {record.ticket_id} no longer known to the platform, cancelling")
            self.__cancel(record)
            return "cancelled"

        record.missing_count = 0
        if wager.get("win_gold") is None:
            self.ledger.update(record)
            return "skipped"

        result_text = f"{wager.get('ball_act_ret') or ''} {wager.get('result_text') or ''}"
        if VOID_PATTERN.search(result_text):
            self.__cancel(record)
            return "cancelled"

        self.__settle(record, wager["win_gold"])
        return "settled"

    def __lookup_detail(self, handle, ticket_id):
        for variant in ticket_variants(ticket_id):
            detail = handle.client.get_bet_detail(variant)
            if detail is not None:
                return detail
        return None

    def __discount(self, account_id):
        account = self.accounts.get(account_id) if self.accounts is not None else None
        return account.discount if account is not None and account.discount else 1.0

    def __settle(self, record, win_gold):
        if record.is_terminal:
            return
        discount = self.__discount(record.account_id)
        if win_gold < 0:
            # Negative amounts are the platform's loss figure
            profit_loss = round(win_gold * discount, 2)
        else:
            profit_loss = round(win_gold * discount - record.stake, 2)

        if profit_loss > STAKE_TOLERANCE:
            result = "win"
            payout = round(record.stake + profit_loss, 2)
        elif profit_loss < -STAKE_TOLERANCE:
            result = "lose"
            payout = 0.0
        else:
            result = "draw"
            payout = record.stake

        record.status = SETTLED
        record.result = result
        record.payout = payout
        record.profit_loss = profit_loss
        record.settled_at = time.time()
        self.ledger.update(record)
        if payout > 0:
            self.ledger.add_transaction(record.record_id, "payout", payout)
        logger.info(f"🏁 Ticket {record.ticket_id} settled: {result} (P/L {profit_loss})")

    def __cancel(self, record):
        if record.is_terminal:
            return
        record.status = CANCELLED
        record.result = "cancelled"
        record.payout = record.stake
        record.profit_loss = 0.0
        record.settled_at = time.time()
        self.ledger.update(record)
        if self.ledger.add_transaction(record.record_id, "refund", record.stake):
            logger.info(f"💸 Refunded {record.stake} for record {record.record_id}")


class SettlementScheduler:
    """Runs sync_settlements every interval seconds on a daemon thread"""

    def __init__(self, reconciler, interval=300):
        self.reconciler = reconciler
        self.interval = interval
        self.__stop_event = threading.Event()
        self.__thread = None
        self.__run_lock = threading.Lock()
        self.last_run_at = None
        self.last_stats = None
        self.runs = 0

    def run_once(self):
        if not self.__run_lock.acquire(blocking=False):
            logger.warning("Settlement sync already running, skipping this round")
            return None
        try:
            self.last_stats = self.reconciler.sync_settlements()
            self.last_run_at = time.time()
            self.runs += 1
            return self.last_stats
        finally:
            self.__run_lock.release()

    def start(self):
        if self.__thread and self.__thread.is_alive():
            logger.warning("Settlement scheduler already running")
            return
        self.__stop_event.clear()
        self.__thread = threading.Thread(target=self.__loop, daemon=True)
        self.__thread.start()
        logger.info(f"⏰ Started settlement scheduler (interval: {self.interval}s)")

    def __loop(self):
        while not self.__stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Settlement sync crashed: {e}")
            self.__stop_event.wait(self.interval)

    def stop(self):
        self.__stop_event.set()
        if self.__thread and self.__thread.is_alive():
            self.__thread.join(timeout=5)
        self.__thread = None
        logger.info("⏹️  Stopped settlement scheduler")

    def is_running(self):
        return self.__thread is not None and self.__thread.is_alive()

    def status(self):
        return {
            "running": self.is_running(),
            "interval": self.interval,
            "last_run_at": self.last_run_at,
            "runs": self.runs,
            "last_stats": self.last_stats,
        }
