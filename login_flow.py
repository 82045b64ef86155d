import re
import time
import random

from logging_setup import get_logger
from errors import (
    CrownError,
    TransportError,
    LoginTimeout,
    ProtocolError,
    SessionEvicted,
    AuthenticationFailed,
    PasscodeUnresolvable,
    CredentialChangeRequired,
    CredentialChangeFailed,
)

logger = get_logger('crown_auth')


class LoginState:
    INIT = "init"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    SUCCESS = "success"
    PASSCODE_PROMPT = "passcode_prompt"
    FORCED_CREDENTIAL_CHANGE = "forced_credential_change"
    EVICTED = "evicted"
    ERROR = "error"
    TIMEOUT = "timeout"


DEFAULT_STAGE_TIMEOUTS = {
    LoginState.CREDENTIALS_SUBMITTED: 20,
    LoginState.PASSCODE_PROMPT: 15,
    LoginState.FORCED_CREDENTIAL_CHANGE: 15,
    LoginState.EVICTED: 10,
}

MAX_LOGIN_ATTEMPTS = 2
MAX_PASSCODE_ROUNDS = 2

# CSS selectors of the member site; override per mirror through LoginFlow(selectors=...)
SELECTORS = {
    "login_form": "#acc_show",
    "username": "#usr",
    "password": "#pwd",
    "login_button": "#btn_login",
    "login_error": "#login_err_msg",
    "home": "#home_show",
    "eviction_dialog": "#alert_kick",
    "eviction_confirm": "#kick_ok_btn",
    "passcode_box": "#prepasscode",
    "passcode_disabled": "#passcode_off",
    "passcode_disabled_confirm": "#passcode_off_btn",
    "passcode_error": "#passcode_err",
    "passcode_new": "#passcode_new",
    "passcode_confirm": "#passcode_confirm",
    "passcode_input": "#passcode_input",
    "passcode_submit": "#passcode_btn",
    "keypad": "#num_keyboard",
    "keypad_key": "#num_keyboard .num_{digit}",
    "keypad_confirm": "#num_keyboard .num_ok",
    "chg_username_form": "#chgAcc_show",
    "chg_username_input": "#chgAcc_username",
    "chg_username_submit": "#chgAcc_btn",
    "chg_username_error": "#chgAcc_err",
    "chg_password_form": "#chgPwd_show",
    "chg_password_old": "#chgPwd_old",
    "chg_password_new": "#chgPwd_new",
    "chg_password_confirm": "#chgPwd_confirm",
    "chg_password_submit": "#chgPwd_btn",
    "chg_password_error": "#chgPwd_err",
}

SAME_PASSWORD_PATTERN = re.compile(r"414|must differ|same as (?:the )?old|不能与旧密码相同|不能與舊密碼相同", re.I)

TRIVIAL_PASSCODES = {"1212", "2121", "1122", "2211", "6969", "1004", "2000", "2580", "0852", "1313"}


def is_trivial_passcode(code):
    """Repeated digits, straight runs (1234, 3210) and a few well-known picks"""
    if not code or len(code) != 4 or not code.isdigit():
        return True
    if code in TRIVIAL_PASSCODES or len(set(code)) == 1:
        return True
    steps = {int(b) - int(a) for a, b in zip(code, code[1:])}
    return steps in ({1}, {-1})


def generate_passcode(rng=None):
    rng = rng or random.SystemRandom()
    while True:
        code = f"{rng.randrange(10000):04d}"
        if not is_trivial_passcode(code):
            return code


def passcode_candidates(cached=None, session_code=None, rng=None):
    """Yield (code, source) in the order cached, session, generated"""
    seen = set()
    for code, source in ((cached, "cached"), (session_code, "session")):
        code = str(code).strip() if code else None
        if code and len(code) == 4 and code.isdigit() and code not in seen:
            seen.add(code)
            yield code, source
    while True:
        code = generate_passcode(rng)
        if code not in seen:
            seen.add(code)
            yield code, "generated"


def wait_for(condition, timeout, poll_interval=0.5):
    """Poll condition until it returns something truthy; None on timeout"""
    deadline = time.monotonic() + timeout
    while True:
        result = condition()
        if result:
            return result
        if time.monotonic() >= deadline:
            return None
        time.sleep(poll_interval)


def element_text(element):
    return (getattr(element, "text", "") or "").strip()


class PasscodeContext:
    """The code tried in one passcode round and where it came from"""

    def __init__(self, code, source, variant=None):
        self.code = code
        self.source = source
        self.variant = variant
        self.accepted = False

    def __repr__(self):
        return f"PasscodeContext(source={self.source!r}, variant={self.variant!r}, accepted={self.accepted})"


class PasscodeVariant:
    name = "unknown"
    needs_code = True

    def __init__(self, selectors):
        self.selectors = selectors

    def detect(self, page):
        raise NotImplementedError

    def submit(self, page, code):
        raise NotImplementedError


class ServerSyncVariant(PasscodeVariant):
    """The platform reports the passcode feature disabled; acknowledge and carry on"""

    name = "server_sync"
    needs_code = False

    def detect(self, page):
        return page.locate(self.selectors["passcode_disabled"]) is not None

    def submit(self, page, code=None):
        button = page.locate(self.selectors["passcode_disabled_confirm"])
        if button is not None:
            page.click(button)
        return True


class FormPairVariant(PasscodeVariant):
    """First-time setup: the code is typed into a new and a confirm field"""

    name = "form_pair"

    def detect(self, page):
        return (page.locate(self.selectors["passcode_new"]) is not None
                and page.locate(self.selectors["passcode_confirm"]) is not None)

    def submit(self, page, code):
        first = page.locate(self.selectors["passcode_new"])
        second = page.locate(self.selectors["passcode_confirm"])
        button = page.locate(self.selectors["passcode_submit"])
        if first is None or second is None or button is None:
            return False
        page.type(first, code)
        page.type(second, code)
        page.click(button)
        return True


class ReEntryVariant(PasscodeVariant):
    name = "re_entry"

    def detect(self, page):
        return page.locate(self.selectors["passcode_input"]) is not None

    def submit(self, page, code):
        field = page.locate(self.selectors["passcode_input"])
        button = page.locate(self.selectors["passcode_submit"])
        if field is None or button is None:
            return False
        page.type(field, code)
        page.click(button)
        return True


class KeypadVariant(PasscodeVariant):
    """On-screen numeric keypad; each digit is a separate button"""

    name = "keypad"

    def detect(self, page):
        return page.locate(self.selectors["keypad"]) is not None

    def submit(self, page, code):
        for digit in code:
            key = page.locate(self.selectors["keypad_key"].format(digit=digit))
            if key is None:
                return False
            page.click(key)
        confirm = page.locate(self.selectors["keypad_confirm"])
        if confirm is not None:
            page.click(confirm)
        return True


DEFAULT_VARIANTS = (ServerSyncVariant, FormPairVariant, ReEntryVariant, KeypadVariant)


def detect_variant(page, variants):
    """Single detection pass; the first variant whose form is on the page wins"""
    for variant in variants:
        if variant.detect(page):
            return variant
    return None


class AuthResult:
    """Outcome of a successful run: live identity plus a persistable blob"""

    def __init__(self, account_id, channel, uid, mid=None, storage=None, transitions=None, passcode=None):
        self.account_id = account_id
        self.channel = channel
        self.uid = uid
        self.mid = mid
        self.storage = storage or {}
        self.transitions = transitions or []
        self.passcode = passcode

    @property
    def state(self):
        return LoginState.SUCCESS

    def __repr__(self):
        return f"AuthResult(account={self.account_id!r}, channel={self.channel!r}, uid={self.uid!r})"


class _Run:
    def __init__(self, account, session_passcode):
        self.account = account
        self.username = account.username
        self.password = account.password
        self.transitions = [LoginState.INIT]
        self.attempts = 0
        self.evictions = 0
        self.rotations = 0
        self.passcode_rounds = 0
        self.passcode_disabled = False
        self.passcode = None
        self.candidates = passcode_candidates(account.passcode, session_passcode)
        self.login_result = None
        self.error = None


class LoginFlow:
    """
    Login state machine for one account.

    States: init -> credentials_submitted -> {success, passcode_prompt,
    forced_credential_change, evicted, error, timeout}. Credentials are
    submitted through the browser page when one is given, otherwise through
    the transport client's chk_login.

    Budgets: at most max_attempts submissions for errors and timeouts, at most
    max_passcode_rounds passcode rounds, one eviction retry and one credential
    rotation per run. Every wait is bounded by the stage timeouts.
    """

    def __init__(self, client=None, page=None, store=None, login_url=None, stage_timeouts=None,
                 max_attempts=MAX_LOGIN_ATTEMPTS, max_passcode_rounds=MAX_PASSCODE_ROUNDS,
                 poll_interval=0.5, selectors=None, variants=None):
        if client is None and page is None:
            raise ValueError("LoginFlow needs a transport client or a browser page")
        self.client = client
        self.page = page
        self.store = store
        self.login_url = login_url
        self.timeouts = dict(DEFAULT_STAGE_TIMEOUTS)
        self.timeouts.update(stage_timeouts or {})
        self.max_attempts = max_attempts
        self.max_passcode_rounds = max_passcode_rounds
        self.poll_interval = poll_interval
        self.selectors = dict(SELECTORS)
        self.selectors.update(selectors or {})
        self.variants = [cls(self.selectors) for cls in (variants or DEFAULT_VARIANTS)]
        self.channel = "browser" if page is not None else "transport"
        self.__handlers = {
            LoginState.INIT: self.__on_init,
            LoginState.CREDENTIALS_SUBMITTED: self.__on_submitted,
            LoginState.PASSCODE_PROMPT: self.__on_passcode,
            LoginState.FORCED_CREDENTIAL_CHANGE: self.__on_credential_change,
            LoginState.EVICTED: self.__on_evicted,
            LoginState.ERROR: self.__on_failure,
            LoginState.TIMEOUT: self.__on_failure,
        }

    def run(self, account, session_passcode=None):
        """
        Drive the state machine to success or a classified failure.

        Returns an AuthResult; raises a CrownError subclass otherwise.
        """
        if not account.username or not account.password:
            raise AuthenticationFailed("username or password missing", account.account_id)

        run = _Run(account, session_passcode)
        logger.info(f"🔄 Login started for account {account.account_id} via {self.channel}")
        state = LoginState.INIT
        try:
            while state != LoginState.SUCCESS:
                state = self.__handlers[state](run)
                run.transitions.append(state)
            return self.__on_success(run)
        except CrownError as e:
            if e.account_id is None:
                e.account_id = account.account_id
            self.__capture_failure(account)
            logger.error(f"❌ Login failed for account {account.account_id} after {run.transitions}: {e}")
            raise

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def __on_init(self, run):
        run.attempts += 1
        run.error = None
        logger.info(f"🔐 Account {run.account.account_id}: login attempt {run.attempts}/{self.max_attempts}")
        if self.page is not None:
            return self.__submit_form(run)
        return self.__submit_transport(run)

    def __submit_form(self, run):
        if self.login_url:
            self.page.navigate(self.login_url)
        username_field = wait_for(
            lambda: self.page.locate(self.selectors["username"]),
            self.timeouts[LoginState.CREDENTIALS_SUBMITTED],
            self.poll_interval,
        )
        if username_field is None:
            run.error = LoginTimeout("login form did not appear", run.account.account_id)
            return LoginState.TIMEOUT
        password_field = self.page.locate(self.selectors["password"])
        button = self.page.locate(self.selectors["login_button"])
        if password_field is None or button is None:
            run.error = ProtocolError("login form is incomplete", run.account.account_id)
            return LoginState.ERROR
        self.page.type(username_field, run.username)
        self.page.type(password_field, run.password)
        self.page.click(button)
        return LoginState.CREDENTIALS_SUBMITTED

    def __submit_transport(self, run):
        try:
            run.login_result = self.client.login(run.username, run.password)
        except SessionEvicted:
            run.login_result = {"success": False, "evicted": True}
        except (TransportError, ProtocolError) as e:
            run.error = e
            return LoginState.ERROR
        return LoginState.CREDENTIALS_SUBMITTED

    def __on_submitted(self, run):
        if self.page is None:
            result = run.login_result or {}
            if result.get("evicted"):
                return LoginState.EVICTED
            if not result.get("success"):
                run.error = AuthenticationFailed(
                    result.get("error") or "login rejected", run.account.account_id, code=result.get("msg")
                )
                return LoginState.ERROR
            if result.get("force_password_change"):
                return LoginState.FORCED_CREDENTIAL_CHANGE
            return LoginState.SUCCESS

        state = wait_for(
            lambda: self.__page_state(run),
            self.timeouts[LoginState.CREDENTIALS_SUBMITTED],
            self.poll_interval,
        )
        if state is None:
            run.error = LoginTimeout("no known page state after submitting credentials", run.account.account_id)
            return LoginState.TIMEOUT
        return state

    def __on_passcode(self, run):
        run.passcode_rounds += 1
        account_id = run.account.account_id
        if run.passcode_rounds > self.max_passcode_rounds:
            raise PasscodeUnresolvable(
                f"passcode still requested after {self.max_passcode_rounds} rounds",
                account_id,
                variant=run.passcode.variant if run.passcode else None,
            )

        variant = wait_for(
            lambda: detect_variant(self.page, self.variants),
            self.timeouts[LoginState.PASSCODE_PROMPT],
            self.poll_interval,
        )
        if variant is None:
            raise PasscodeUnresolvable("passcode requested but no known passcode form found", account_id)

        if not variant.needs_code:
            variant.submit(self.page)
            run.passcode_disabled = True
            logger.info(f"🔓 Account {account_id}: passcode disabled by the platform, checking for credential change")
            return self.__wait_after_passcode(run)

        code, source = next(run.candidates)
        run.passcode = PasscodeContext(code, source, variant.name)
        logger.info(f"🔢 Account {account_id}: entering {source} passcode via {variant.name}")
        if not variant.submit(self.page, code):
            raise PasscodeUnresolvable(f"{variant.name} form rejected input", account_id, variant=variant.name)
        return self.__wait_after_passcode(run)

    def __wait_after_passcode(self, run):
        def settled():
            if not run.passcode_disabled and self.page.locate(self.selectors["passcode_error"]) is not None:
                return LoginState.PASSCODE_PROMPT
            return self.__page_state(run, include_passcode=False)

        state = wait_for(settled, self.timeouts[LoginState.PASSCODE_PROMPT], self.poll_interval)
        if state is None:
            if run.passcode_disabled:
                run.error = LoginTimeout("no page state after passcode acknowledgement", run.account.account_id)
                return LoginState.TIMEOUT
            # Prompt is still there: count it as a rejected round
            return LoginState.PASSCODE_PROMPT
        if state == LoginState.PASSCODE_PROMPT:
            logger.warning(f"⚠️  Account {run.account.account_id}: passcode rejected")
        elif run.passcode is not None and state != LoginState.ERROR:
            run.passcode.accepted = True
        return state

    def __on_credential_change(self, run):
        account_id = run.account.account_id
        if run.rotations >= 1:
            raise CredentialChangeFailed(
                "platform still demands a credential change after rotating", account_id, step="relogin"
            )
        run.rotations += 1

        if self.page is None:
            self.__rotate_via_transport(run)
        else:
            self.__rotate_via_page(run)

        logger.info(f"🔁 Account {account_id}: credentials rotated, logging in again")
        # The re-login after a rotation does not count against the error budget
        run.attempts = max(0, run.attempts - 1)
        return LoginState.INIT

    def __rotate_via_transport(self, run):
        account = run.account
        target_username = account.target_username
        target_password = account.target_password
        if not target_password and not (target_username and target_username != run.username):
            raise CredentialChangeRequired(
                "platform requires a credential change but no target credentials are configured",
                account.account_id, step="password",
            )

        if target_username and target_username != run.username:
            self.client.change_username(target_username)
            run.username = target_username
            self.__save_credentials(run, username=target_username)
        if target_password:
            self.client.change_password(target_password, current_password=run.password)
            run.password = target_password
            self.__save_credentials(run, password=target_password)
        self.client.clear_identity()

    def __rotate_via_page(self, run):
        account = run.account
        forms = wait_for(self.__credential_forms, self.timeouts[LoginState.FORCED_CREDENTIAL_CHANGE],
                         self.poll_interval)
        if not forms:
            raise LoginTimeout("credential change form did not appear", account.account_id)

        if "username" in forms:
            self.__change_username_form(run)
            # The password form frequently follows the login id form
            forms = wait_for(self.__credential_forms, min(2, self.timeouts[LoginState.FORCED_CREDENTIAL_CHANGE]),
                             self.poll_interval) or set()
        if "password" in forms:
            self.__change_password_form(run)

    def __change_username_form(self, run):
        account = run.account
        target = account.target_username
        if not target:
            raise CredentialChangeRequired("login id change required but no target login id configured",
                                           account.account_id, step="username")
        field = self.page.locate(self.selectors["chg_username_input"])
        button = self.page.locate(self.selectors["chg_username_submit"])
        if field is None or button is None:
            raise CredentialChangeFailed("login id form is incomplete", account.account_id, step="username")
        self.page.type(field, target)
        self.page.click(button)

        outcome = wait_for(
            lambda: self.__form_outcome("chg_username_form", "chg_username_error"),
            self.timeouts[LoginState.FORCED_CREDENTIAL_CHANGE],
            self.poll_interval,
        )
        if outcome is None:
            raise LoginTimeout("login id change did not complete", account.account_id)
        if outcome != "done":
            raise CredentialChangeFailed(f"login id change refused: {outcome}", account.account_id, step="username")
        run.username = target
        self.__save_credentials(run, username=target)
        logger.info(f"🔑 Account {account.account_id}: login id changed")

    def __change_password_form(self, run):
        account = run.account
        target = account.target_password
        if not target:
            raise CredentialChangeRequired("password change required but no target password configured",
                                           account.account_id, step="password")
        old_field = self.page.locate(self.selectors["chg_password_old"])
        new_field = self.page.locate(self.selectors["chg_password_new"])
        confirm_field = self.page.locate(self.selectors["chg_password_confirm"])
        button = self.page.locate(self.selectors["chg_password_submit"])
        if new_field is None or button is None:
            raise CredentialChangeFailed("password form is incomplete", account.account_id, step="password")
        if old_field is not None:
            self.page.type(old_field, run.password)
        self.page.type(new_field, target)
        if confirm_field is not None:
            self.page.type(confirm_field, target)
        self.page.click(button)

        outcome = wait_for(
            lambda: self.__form_outcome("chg_password_form", "chg_password_error"),
            self.timeouts[LoginState.FORCED_CREDENTIAL_CHANGE],
            self.poll_interval,
        )
        if outcome is None:
            raise LoginTimeout("password change did not complete", account.account_id)
        if outcome != "done":
            if SAME_PASSWORD_PATTERN.search(outcome) and target == run.password:
                logger.info(f"🔑 Account {account.account_id}: password already matches target")
            else:
                raise CredentialChangeFailed(f"password change refused: {outcome}", account.account_id,
                                             step="password")
        run.password = target
        self.__save_credentials(run, password=target)
        logger.info(f"🔑 Account {account.account_id}: password changed")

    def __on_evicted(self, run):
        account_id = run.account.account_id
        if run.evictions >= 1:
            raise SessionEvicted("evicted again after one retry", account_id)
        run.evictions += 1
        logger.warning(f"🚪 Account {account_id}: active elsewhere, acknowledging and retrying once")

        if self.page is not None:
            button = wait_for(
                lambda: self.page.locate(self.selectors["eviction_confirm"]),
                self.timeouts[LoginState.EVICTED],
                self.poll_interval,
            )
            if button is not None:
                self.page.click(button)
        if self.client is not None:
            self.client.clear_identity()
        run.attempts = max(0, run.attempts - 1)
        return LoginState.INIT

    def __on_failure(self, run):
        error = run.error or ProtocolError("login failed", run.account.account_id)
        if isinstance(error, AuthenticationFailed):
            raise error
        if run.attempts >= self.max_attempts:
            raise error
        logger.warning(f"🔄 Account {run.account.account_id}: {error}; retrying")
        return LoginState.INIT

    def __on_success(self, run):
        account = run.account
        uid = mid = None
        storage = {}
        if self.page is not None:
            uid = self.page.evaluate("(window.top && top.uid) || (window._CHDomain && _CHDomain.uid) || null")
            mid = self.page.evaluate("(window.top && top.mid) || null")
            cookies = self.page.get_cookies() if hasattr(self.page, "get_cookies") else []
            if self.client is not None:
                self.client.adopt_cookies(cookies)
                if uid:
                    self.client.restore_identity({"uid": uid, "mid": mid, "username": run.username})
        if self.client is not None:
            uid = uid or self.client.uid
            mid = mid or self.client.mid
            storage = self.client.export_identity()
        storage["channel"] = self.channel

        passcode = run.passcode if run.passcode and run.passcode.accepted else None
        if passcode and passcode.code != account.passcode and self.store is not None:
            self.store.save_passcode(account.account_id, passcode.code)

        logger.info(f"✅ Account {account.account_id}: logged in ({' -> '.join(run.transitions)})")
        return AuthResult(account.account_id, self.channel, uid, mid, storage, list(run.transitions), passcode)

    # ------------------------------------------------------------------
    # Page inspection
    # ------------------------------------------------------------------

    def __visible(self, key):
        return self.page.locate(self.selectors[key]) is not None

    def __page_state(self, run, include_passcode=True):
        if self.__visible("eviction_dialog"):
            return LoginState.EVICTED
        if self.__credential_forms():
            return LoginState.FORCED_CREDENTIAL_CHANGE
        if include_passcode and not run.passcode_disabled and self.__visible("passcode_box"):
            return LoginState.PASSCODE_PROMPT
        if self.__visible("home") and not self.__visible("login_form"):
            return LoginState.SUCCESS
        error = self.page.locate(self.selectors["login_error"])
        if error is not None and element_text(error):
            run.error = AuthenticationFailed(element_text(error), run.account.account_id)
            return LoginState.ERROR
        return None

    def __credential_forms(self):
        forms = set()
        if self.__visible("chg_username_form"):
            forms.add("username")
        if self.__visible("chg_password_form"):
            forms.add("password")
        return forms

    def __form_outcome(self, form_key, error_key):
        error = self.page.locate(self.selectors[error_key])
        if error is not None and element_text(error):
            return element_text(error)
        if not self.__visible(form_key):
            return "done"
        return None

    def __save_credentials(self, run, username=None, password=None):
        if self.store is not None:
            self.store.save_credentials(run.account.account_id, username=username, password=password)

    def __capture_failure(self, account):
        if self.page is None:
            return
        try:
            path = self.page.screenshot()
            logger.info(f"Login error screenshot saved for account {account.account_id}: {path}")
        except Exception as screenshot_error:
            logger.error(f"Failed to take error screenshot: {screenshot_error}")
