import os
import re
import json
import time
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed

from logging_setup import get_logger
from settings import Settings
from crown_client import CrownClient
from login_flow import LoginFlow, SELECTORS
from errors import CrownError, SessionEvicted

logger = get_logger('crown_sessions')

ABSENT = "absent"
AUTHENTICATING = "authenticating"
LIVE = "live"
STALE = "stale"
CLOSED = "closed"


class SessionHandle:
    """
    The live identity of one account: its transport client and, for browser
    logins, the page it was established on.
    """

    def __init__(self, account_id, client=None, page=None, state=ABSENT, now=None):
        now = now if now is not None else time.time()
        self.account_id = account_id
        self.client = client
        self.page = page
        self.state = state
        self.created_at = now
        self.verified_at = None
        self.heartbeat_at = now
        self.storage = None
        self.passcode = None

    def mark_live(self, now=None):
        now = now if now is not None else time.time()
        self.state = LIVE
        self.verified_at = now
        self.heartbeat_at = now

    def is_fresh(self, ttl, now=None):
        now = now if now is not None else time.time()
        return self.state == LIVE and self.verified_at is not None and now - self.verified_at < ttl

    def is_closed(self):
        if self.state == CLOSED:
            return True
        return self.page is not None and self.page.is_closed()

    def close(self):
        if self.page is not None:
            self.page.close()
        if self.client is not None:
            self.client.logout()
        self.state = CLOSED

    def to_dict(self):
        return {
            "account_id": self.account_id,
            "state": self.state,
            "created_at": self.created_at,
            "verified_at": self.verified_at,
            "heartbeat_at": self.heartbeat_at,
            "has_page": self.page is not None,
            "uid": self.client.uid if self.client is not None else None,
        }


class SessionRegistry:
    """Single owner of the account id -> SessionHandle map"""

    def __init__(self):
        self.__handles = {}
        self.__lock = threading.Lock()

    def get(self, account_id):
        with self.__lock:
            return self.__handles.get(account_id)

    def put(self, handle):
        """Register a handle; returns the handle it replaced, if any"""
        with self.__lock:
            previous = self.__handles.get(handle.account_id)
            self.__handles[handle.account_id] = handle
        if previous is not None and previous is not handle:
            return previous
        return None

    def remove(self, account_id):
        with self.__lock:
            return self.__handles.pop(account_id, None)

    def all(self):
        with self.__lock:
            return list(self.__handles.values())

    def __len__(self):
        with self.__lock:
            return len(self.__handles)


class SessionStore:
    """Session blobs persisted as <profile_dir>/<account>/session.json"""

    def __init__(self, profile_dir="profiles", max_age=7200):
        self.profile_dir = profile_dir
        self.max_age = max_age

    def path(self, account_id):
        safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", str(account_id))
        return os.path.join(self.profile_dir, safe_name, "session.json")

    def save(self, account_id, blob):
        path = self.path(account_id)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            data = dict(blob)
            data.setdefault("saved_at", time.time())
            tmp_file = f"{path}.tmp"
            with open(tmp_file, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_file, path)
            return True
        except OSError as e:
            logger.error(f"Error saving session for account {account_id}: {e}")
            return False

    def load(self, account_id, now=None):
        """Return the stored blob, or None when missing, unreadable or older than max_age"""
        path = self.path(account_id)
        try:
            with open(path, "r") as f:
                blob = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session file {path}: {e}")
            return None

        now = now if now is not None else time.time()
        saved_at = blob.get("saved_at") or 0
        if now - saved_at > self.max_age:
            logger.info(f"Stored session for account {account_id} expired")
            self.delete(account_id)
            return None
        return blob

    def delete(self, account_id):
        try:
            os.remove(self.path(account_id))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not delete session file for account {account_id}: {e}")


class SessionManager:
    """
    Keeps one live session per account.

    ensure_session returns a handle verified within liveness_ttl, otherwise
    probes it, then tries the persisted session, and only then runs a full
    login. A background sweep re-validates handles whose heartbeat is older
    than heartbeat_ttl and mirrors online/offline into the account store.

    Parameters:
    - accounts: AccountStore
    - registry: SiteRegistry shared by every transport client
    - settings: Settings (defaults read from the environment)
    - client_factory: callable(account) -> CrownClient
    - page_factory: callable(account) -> BrowserPage or None
    - flow_factory: callable(client, page) -> LoginFlow
    - clock: time source, time.time by default
    """

    def __init__(self, accounts, registry=None, settings=None, client_factory=None, page_factory=None,
                 flow_factory=None, session_store=None, clock=None):
        self.accounts = accounts
        self.site_registry = registry
        self.settings = settings or Settings()
        self.sessions = SessionRegistry()
        self.session_store = session_store or SessionStore(self.settings.profile_dir, self.settings.session_max_age)
        self.__client_factory = client_factory or self.__default_client
        self.__page_factory = page_factory or self.__default_page
        self.__flow_factory = flow_factory or self.__default_flow
        self.__clock = clock or time.time
        self.__locks = {}
        self.__locks_guard = threading.Lock()
        self.__session_passcodes = {}
        self.__stop_event = threading.Event()
        self.__sweep_thread = None

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    def __default_client(self, account):
        return CrownClient(
            registry=self.site_registry,
            base_url=self.settings.base_url,
            proxy=account.get_proxy_url(),
            user_agent=account.get_user_agent(),
            version=self.settings.api_version,
            langx=self.settings.language,
            timeout=self.settings.request_timeout,
            ip_host_timeout=self.settings.ip_host_timeout,
            host_cooldown=self.settings.host_cooldown,
            account_id=account.account_id,
        )

    def __default_page(self, account):
        if not self.settings.use_browser_login:
            return None
        from browser_page import BrowserPage
        profile_path = os.path.join(self.settings.profile_dir, re.sub(r"[^A-Za-z0-9_.-]", "_", str(account.account_id)),
                                    "chrome")
        return BrowserPage(
            headless=self.settings.headless,
            proxy=account.get_proxy_url(),
            user_agent=account.get_user_agent(),
            profile_path=profile_path,
        )

    def __default_flow(self, client, page):
        login_url = None
        if page is not None:
            login_url = client.base_url() if client is not None else self.settings.base_url
        return LoginFlow(
            client=client,
            page=page,
            store=self.accounts,
            login_url=login_url,
            stage_timeouts=self.settings.stage_timeouts(),
            max_attempts=self.settings.login_max_attempts,
        )

    def __account_lock(self, account_id):
        with self.__locks_guard:
            lock = self.__locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self.__locks[account_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ensure_session(self, account_id):
        """
        Return a live SessionHandle for the account.

        Raises CrownError subclasses from the login when no session could be
        established.
        """
        account = self.accounts.get(account_id)
        if account is None or not account.enabled:
            raise CrownError("account is unknown or disabled", account_id)

        with self.__account_lock(account_id):
            now = self.__clock()
            handle = self.sessions.get(account_id)

            if handle is not None and handle.is_fresh(self.settings.liveness_ttl, now):
                return handle

            if handle is not None and handle.state in (LIVE, STALE) and not handle.is_closed():
                if self.probe(handle):
                    handle.mark_live(self.__clock())
                    return handle
                logger.info(f"♻️  Session for account {account_id} failed its probe, discarding")
            if handle is not None:
                self.__discard(handle)

            handle = self.__restore(account)
            if handle is not None:
                return handle
            return self.__login(account)

    def __restore(self, account):
        blob = self.session_store.load(account.account_id, now=self.__clock())
        if not blob:
            return None
        client = self.__client_factory(account)
        if not client.restore_identity(blob) or not client.check_alive():
            logger.info(f"Stored session for account {account.account_id} is no longer valid")
            self.session_store.delete(account.account_id)
            return None

        handle = SessionHandle(account.account_id, client, None, LIVE, now=self.__clock())
        handle.mark_live(self.__clock())
        handle.storage = blob
        self.__register(handle)
        self.accounts.set_online(account.account_id, True)
        logger.info(f"♻️  Restored stored session for account {account.account_id}")
        return handle

    def __login(self, account):
        client = self.__client_factory(account)
        page = self.__page_factory(account)
        handle = SessionHandle(account.account_id, client, page, AUTHENTICATING, now=self.__clock())
        self.__register(handle)

        flow = self.__flow_factory(client, page)
        try:
            result = flow.run(account, session_passcode=self.__session_passcodes.get(account.account_id))
        except CrownError as e:
            self.sessions.remove(account.account_id)
            handle.close()
            self.accounts.set_online(account.account_id, False, error_message=str(e))
            raise

        handle.mark_live(self.__clock())
        handle.storage = result.storage
        if result.passcode is not None:
            handle.passcode = result.passcode.code
            self.__session_passcodes[account.account_id] = result.passcode.code
        if result.storage:
            self.session_store.save(account.account_id, result.storage)
        self.accounts.set_online(account.account_id, True)
        return handle

    def __register(self, handle):
        previous = self.sessions.put(handle)
        if previous is not None:
            previous.close()

    def __discard(self, handle):
        if self.sessions.get(handle.account_id) is handle:
            self.sessions.remove(handle.account_id)
        handle.close()

    def probe(self, handle):
        """Cheap liveness check: home visible on the page, else transport member data"""
        if handle.page is not None and not handle.page.is_closed():
            home = handle.page.locate(SELECTORS["home"])
            login = handle.page.locate(SELECTORS["login_form"])
            if home is not None and login is None:
                return True
            if handle.client is None:
                return False
        if handle.client is None:
            return False
        return handle.client.check_alive()

    def invalidate(self, account_id):
        """Drop the local identity after the platform evicted the session"""
        with self.__account_lock(account_id):
            handle = self.sessions.get(account_id)
            if handle is not None:
                if handle.client is not None:
                    handle.client.clear_identity()
                handle.state = STALE
            self.session_store.delete(account_id)

    def run_with_session(self, account_id, operation):
        """
        Call operation(handle) with a live session.

        On SessionEvicted the local identity is cleared, the account logs in
        exactly once more and the operation is retried; a second eviction
        propagates.
        """
        handle = self.ensure_session(account_id)
        try:
            return operation(handle)
        except SessionEvicted:
            logger.warning(f"🚪 Account {account_id} was evicted, logging in again")
            self.invalidate(account_id)
            handle = self.ensure_session(account_id)
            return operation(handle)

    def logout(self, account_id):
        with self.__account_lock(account_id):
            handle = self.sessions.remove(account_id)
            if handle is not None:
                handle.close()
            self.session_store.delete(account_id)
            self.__session_passcodes.pop(account_id, None)
            self.accounts.set_online(account_id, False)
        logger.info(f"👋 Account {account_id} logged out")
        return handle is not None

    def shutdown(self):
        """Close browser pages but keep platform sessions and stored blobs for the next start"""
        self.stop_sweeper()
        for handle in self.sessions.all():
            if handle.page is not None:
                handle.page.close()
                handle.page = None
        logger.info(f"Shut down {len(self.sessions)} sessions")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def sweep(self, heal=False):
        """
        Prune closed handles and re-validate those whose heartbeat is older
        than heartbeat_ttl. With heal=True a failed handle is re-established
        straight away instead of waiting for the next ensure_session.
        """
        now = self.__clock()
        stats = {"checked": 0, "online": 0, "offline": 0, "pruned": 0, "healed": 0}
        due = []
        for handle in self.sessions.all():
            if handle.is_closed():
                if self.sessions.get(handle.account_id) is handle:
                    self.sessions.remove(handle.account_id)
                self.accounts.set_online(handle.account_id, False)
                stats["pruned"] += 1
                logger.info(f"🧹 Pruned closed session for account {handle.account_id}")
                continue
            if handle.state == AUTHENTICATING:
                continue
            if now - handle.heartbeat_at >= self.settings.heartbeat_ttl:
                due.append(handle)

        if not due:
            return stats

        with ThreadPoolExecutor(max_workers=min(8, len(due))) as executor:
            futures = {executor.submit(self.__revalidate, handle, heal): handle for handle in due}
            for future in as_completed(futures):
                handle = futures[future]
                stats["checked"] += 1
                try:
                    outcome = future.result()
                except CrownError as e:
                    logger.error(f"Sweep could not revalidate account {handle.account_id}: {e}")
                    outcome = "offline"
                stats[outcome] += 1
                if outcome == "healed":
                    stats["online"] += 1
        logger.info(f"💓 Sweep: {stats}")
        return stats

    def __revalidate(self, handle, heal):
        lock = self.__account_lock(handle.account_id)
        if not lock.acquire(blocking=False):
            # The account's worker is using the session right now
            return "online"
        try:
            if self.probe(handle):
                handle.mark_live(self.__clock())
                self.accounts.set_online(handle.account_id, True)
                return "online"
            handle.state = STALE
            self.accounts.set_online(handle.account_id, False, error_message="heartbeat failed")
        finally:
            lock.release()

        if heal:
            self.ensure_session(handle.account_id)
            return "healed"
        return "offline"

    def start_sweeper(self, heal=True):
        if self.__sweep_thread and self.__sweep_thread.is_alive():
            logger.warning("Session sweep already running")
            return
        self.__stop_event.clear()
        self.__sweep_thread = threading.Thread(target=self.__sweep_loop, args=(heal,), daemon=True)
        self.__sweep_thread.start()
        logger.info(f"⏰ Started session sweep (interval: {self.settings.sweep_interval}s)")

    def __sweep_loop(self, heal):
        while not self.__stop_event.wait(self.settings.sweep_interval):
            try:
                self.sweep(heal=heal)
            except Exception as e:
                logger.error(f"Session sweep failed: {e}")

    def stop_sweeper(self):
        self.__stop_event.set()
        if self.__sweep_thread and self.__sweep_thread.is_alive():
            self.__sweep_thread.join(timeout=5)
        self.__sweep_thread = None

    # ------------------------------------------------------------------
    # Startup and status
    # ------------------------------------------------------------------

    def resume_online_accounts(self):
        """Re-establish sessions for accounts the store still marks online"""
        accounts = [a for a in self.accounts.online() if self.sessions.get(a.account_id) is None]
        results = {}
        if not accounts:
            return results
        with ThreadPoolExecutor(max_workers=min(self.settings.bet_max_workers, len(accounts))) as executor:
            futures = {executor.submit(self.ensure_session, a.account_id): a for a in accounts}
            for future in as_completed(futures):
                account = futures[future]
                try:
                    future.result()
                    results[account.account_id] = True
                except CrownError as e:
                    logger.error(f"Could not resume account {account.account_id}: {e}")
                    results[account.account_id] = False
        return results

    def status(self):
        handles = self.sessions.all()
        return {
            "sessions": [h.to_dict() for h in handles],
            "live": sum(1 for h in handles if h.state == LIVE),
            "stale": sum(1 for h in handles if h.state == STALE),
            "total": len(handles),
        }
