#!/usr/bin/env python3
"""
Tests for the login state machine over both channels: the transport
channel with a scripted client and the browser channel with a fake page
whose DOM changes when buttons are clicked.
"""

import random
import logging

import pytest

from accounts import AccountCredential
from login_flow import (
    LoginFlow,
    LoginState,
    SELECTORS,
    is_trivial_passcode,
    generate_passcode,
    passcode_candidates,
)
from errors import (
    TransportError,
    LoginTimeout,
    SessionEvicted,
    AuthenticationFailed,
    PasscodeUnresolvable,
    CredentialChangeRequired,
    CredentialChangeFailed,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

FAST_TIMEOUTS = {
    LoginState.CREDENTIALS_SUBMITTED: 0.05,
    LoginState.PASSCODE_PROMPT: 0.05,
    LoginState.FORCED_CREDENTIAL_CHANGE: 0.05,
    LoginState.EVICTED: 0.05,
}
LOGIN_FORM = ("login_form", "username", "password", "login_button")
PASSWORD_FORM = ("chg_password_form", "chg_password_old", "chg_password_new",
                 "chg_password_confirm", "chg_password_submit")


class FakeElement:
    def __init__(self, selector, text=""):
        self.selector = selector
        self.text = text


class FakePage:
    """
    Minimal page: a set of visible selectors, texts for some of them and
    click handlers that rewrite what is visible.
    """

    def __init__(self, visible=LOGIN_FORM, values=None):
        self.visible = set()
        self.texts = {}
        self.handlers = {}
        self.values = values or {}
        self.clicks = []
        self.typed = []
        self.navigations = []
        self.screenshots = 0
        self.closed = False
        self.show(*visible)

    def show(self, *keys, **texts):
        self.visible = {SELECTORS.get(k, k) for k in keys}
        for key, text in texts.items():
            self.visible.add(SELECTORS[key])
            self.texts[SELECTORS[key]] = text

    def on_click(self, key, handler):
        self.handlers[SELECTORS.get(key, key)] = handler

    def navigate(self, url):
        self.navigations.append(url)
        return True

    def locate(self, selector):
        if selector in self.visible:
            return FakeElement(selector, self.texts.get(selector, ""))
        return None

    def type(self, element, text):
        self.typed.append((element.selector, text))

    def click(self, element):
        self.clicks.append(element.selector)
        handler = self.handlers.get(element.selector)
        if handler:
            handler(self)

    def evaluate(self, script, *args):
        if "uid" in script:
            return self.values.get("uid")
        if "mid" in script:
            return self.values.get("mid")
        return None

    def screenshot(self, prefix="login_error"):
        self.screenshots += 1
        return f"{prefix}.png"

    def get_cookies(self):
        return [{"name": "session", "value": "abc"}]

    def is_closed(self):
        return self.closed

    def close(self):
        self.closed = True

    def typed_into(self, key):
        selector = SELECTORS[key]
        return [text for sel, text in self.typed if sel == selector]


class FakeClient:
    def __init__(self, replies=None):
        self.replies = list(replies or [])
        self.logins = []
        self.changes = []
        self.cleared = 0
        self.cookies = None
        self.uid = None
        self.mid = None

    def login(self, username, password):
        self.logins.append((username, password))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if reply.get("success"):
            self.uid = reply.get("uid", "U1")
        return reply

    def change_username(self, new_username):
        self.changes.append(("username", new_username))
        return True

    def change_password(self, new_password, current_password=None):
        self.changes.append(("password", new_password, current_password))
        return True

    def clear_identity(self):
        self.cleared += 1
        self.uid = None

    def export_identity(self):
        return {"uid": self.uid, "mid": self.mid}

    def adopt_cookies(self, cookies):
        self.cookies = cookies

    def restore_identity(self, blob):
        self.uid = blob.get("uid")
        self.mid = blob.get("mid")
        return True


class FakeStore:
    def __init__(self):
        self.passcodes = []
        self.credentials = []

    def save_passcode(self, account_id, passcode):
        self.passcodes.append((account_id, passcode))
        return True

    def save_credentials(self, account_id, username=None, password=None):
        self.credentials.append((account_id, username, password))
        return True


def make_account(**kwargs):
    kwargs.setdefault("username", "alice01")
    kwargs.setdefault("password", "Old12345")
    return AccountCredential("acc-1", **kwargs)


def make_flow(client=None, page=None, store=None, **kwargs):
    kwargs.setdefault("stage_timeouts", FAST_TIMEOUTS)
    kwargs.setdefault("poll_interval", 0)
    return LoginFlow(client=client, page=page, store=store, **kwargs)


OK = {"success": True, "msg": "100", "uid": "U1", "force_password_change": False}
FORCED = {"success": True, "msg": "109", "uid": "U1", "force_password_change": True}


# ----------------------------------------------------------------------
# Passcode helpers
# ----------------------------------------------------------------------

def test_trivial_passcodes_are_detected():
    for code in ("0000", "1234", "4321", "1212", "123", "abcd"):
        assert is_trivial_passcode(code)
    assert not is_trivial_passcode("5831")


def test_generated_passcodes_are_not_trivial():
    rng = random.Random(7)
    for _ in range(50):
        code = generate_passcode(rng)
        assert len(code) == 4 and code.isdigit()
        assert not is_trivial_passcode(code)


def test_candidate_order_is_cached_then_session_then_generated():
    candidates = passcode_candidates("5831", "7264", random.Random(1))
    assert next(candidates) == ("5831", "cached")
    assert next(candidates) == ("7264", "session")
    code, source = next(candidates)
    assert source == "generated" and code not in ("5831", "7264")


def test_invalid_cached_passcode_is_skipped():
    candidates = passcode_candidates("12", None, random.Random(1))
    assert next(candidates)[1] == "generated"


# ----------------------------------------------------------------------
# Transport channel
# ----------------------------------------------------------------------

def test_transport_login_success():
    client = FakeClient([OK])
    result = make_flow(client).run(make_account())

    assert result.uid == "U1"
    assert result.channel == "transport"
    assert result.storage["channel"] == "transport"
    assert result.transitions == [LoginState.INIT, LoginState.CREDENTIALS_SUBMITTED, LoginState.SUCCESS]


def test_rejected_credentials_are_not_retried():
    client = FakeClient([{"success": False, "msg": "105", "error": "wrong password"}, OK])
    with pytest.raises(AuthenticationFailed) as excinfo:
        make_flow(client).run(make_account())
    assert excinfo.value.account_id == "acc-1"
    assert len(client.logins) == 1


def test_missing_password_fails_before_submitting():
    client = FakeClient([OK])
    with pytest.raises(AuthenticationFailed):
        make_flow(client).run(make_account(password=""))
    assert client.logins == []


def test_transport_errors_are_retried_within_budget():
    client = FakeClient([TransportError("down"), OK])
    result = make_flow(client).run(make_account())
    assert result.uid == "U1"
    assert len(client.logins) == 2


def test_transport_errors_exhaust_budget():
    client = FakeClient([TransportError("down")] * 5)
    with pytest.raises(TransportError):
        make_flow(client, max_attempts=2).run(make_account())
    assert len(client.logins) == 2


def test_eviction_retries_once():
    client = FakeClient([SessionEvicted("doubleLogin"), OK])
    result = make_flow(client).run(make_account())
    assert LoginState.EVICTED in result.transitions
    assert client.cleared == 1
    assert len(client.logins) == 2


def test_second_eviction_propagates():
    client = FakeClient([SessionEvicted("doubleLogin")] * 3)
    with pytest.raises(SessionEvicted):
        make_flow(client).run(make_account())
    assert len(client.logins) == 2


def test_forced_change_rotates_and_logs_in_again():
    client = FakeClient([FORCED, OK])
    store = FakeStore()
    account = make_account(target_username="alice02", target_password="New12345")
    result = make_flow(client, store=store).run(account)

    assert client.changes == [("username", "alice02"), ("password", "New12345", "Old12345")]
    assert client.logins[1] == ("alice02", "New12345")
    assert ("acc-1", None, "New12345") in store.credentials
    assert ("acc-1", "alice02", None) in store.credentials
    assert LoginState.FORCED_CREDENTIAL_CHANGE in result.transitions


def test_forced_change_without_targets_needs_operator():
    client = FakeClient([FORCED])
    with pytest.raises(CredentialChangeRequired):
        make_flow(client).run(make_account())


def test_forced_change_twice_fails():
    client = FakeClient([FORCED, FORCED])
    with pytest.raises(CredentialChangeFailed) as excinfo:
        make_flow(client).run(make_account(target_password="New12345"))
    assert excinfo.value.step == "relogin"


# ----------------------------------------------------------------------
# Browser channel
# ----------------------------------------------------------------------

def test_page_login_success_adopts_identity():
    page = FakePage(values={"uid": "U7", "mid": "M7"})
    page.on_click("login_button", lambda p: p.show("home"))
    client = FakeClient()

    result = make_flow(client, page, login_url="https://base.example").run(make_account())

    assert result.channel == "browser"
    assert result.uid == "U7" and result.mid == "M7"
    assert client.uid == "U7"
    assert client.cookies == [{"name": "session", "value": "abc"}]
    assert page.navigations == ["https://base.example"]
    assert page.typed_into("username") == ["alice01"]
    assert page.typed_into("password") == ["Old12345"]


def test_page_login_error_is_not_retried():
    page = FakePage()
    page.on_click("login_button", lambda p: p.show(*LOGIN_FORM, login_error="密码错误"))

    with pytest.raises(AuthenticationFailed):
        make_flow(page=page).run(make_account())
    assert page.clicks.count(SELECTORS["login_button"]) == 1
    assert page.screenshots == 1


def test_missing_login_form_times_out_after_budget():
    page = FakePage(visible=())
    with pytest.raises(LoginTimeout):
        make_flow(page=page, login_url="https://base.example").run(make_account())
    assert len(page.navigations) == 2


def test_keypad_passcode_uses_cached_code():
    keys = ["keypad_confirm"] + [f"#num_keyboard .num_{d}" for d in range(10)]
    page = FakePage()
    page.on_click("login_button", lambda p: p.show("passcode_box", "keypad", *keys))
    page.on_click("keypad_confirm", lambda p: p.show("home"))
    store = FakeStore()

    result = make_flow(page=page, store=store).run(make_account(passcode="5831"))

    digit_clicks = [c for c in page.clicks if ".num_" in c and "ok" not in c]
    assert digit_clicks == [f"#num_keyboard .num_{d}" for d in "5831"]
    assert result.passcode.code == "5831"
    assert result.passcode.source == "cached"
    assert result.passcode.variant == "keypad"
    assert store.passcodes == []


def test_form_pair_passcode_is_generated_and_stored():
    page = FakePage()
    page.on_click("login_button",
                  lambda p: p.show("passcode_box", "passcode_new", "passcode_confirm", "passcode_submit"))
    page.on_click("passcode_submit", lambda p: p.show("home"))
    store = FakeStore()

    result = make_flow(page=page, store=store).run(make_account())

    first = page.typed_into("passcode_new")
    second = page.typed_into("passcode_confirm")
    assert first == second and len(first) == 1
    assert not is_trivial_passcode(first[0])
    assert result.passcode.source == "generated"
    assert store.passcodes == [("acc-1", first[0])]


def test_session_passcode_is_reused():
    page = FakePage()
    page.on_click("login_button", lambda p: p.show("passcode_box", "passcode_input", "passcode_submit"))
    page.on_click("passcode_submit", lambda p: p.show("home"))

    result = make_flow(page=page).run(make_account(), session_passcode="7264")
    assert page.typed_into("passcode_input") == ["7264"]
    assert result.passcode.source == "session"


def test_rejected_passcode_rounds_are_bounded():
    page = FakePage()
    page.on_click("login_button", lambda p: p.show("passcode_box", "passcode_input", "passcode_submit"))
    page.on_click("passcode_submit",
                  lambda p: p.show("passcode_box", "passcode_input", "passcode_submit", passcode_error="错误"))

    with pytest.raises(PasscodeUnresolvable):
        make_flow(page=page, max_passcode_rounds=2).run(make_account(passcode="5831"))

    entered = page.typed_into("passcode_input")
    assert len(entered) == 2
    assert entered[0] == "5831" and entered[1] != "5831"


def test_unknown_passcode_form_needs_operator():
    page = FakePage()
    page.on_click("login_button", lambda p: p.show("passcode_box"))
    with pytest.raises(PasscodeUnresolvable):
        make_flow(page=page).run(make_account())


def test_disabled_passcode_leads_to_forced_password_change():
    page = FakePage()
    logins = []

    def after_login(p):
        logins.append(1)
        if len(logins) == 1:
            p.show("passcode_box", "passcode_disabled", "passcode_disabled_confirm")
        else:
            p.show("home")

    page.on_click("login_button", after_login)
    page.on_click("passcode_disabled_confirm", lambda p: p.show(*PASSWORD_FORM))
    page.on_click("chg_password_submit", lambda p: p.show(*LOGIN_FORM))
    store = FakeStore()

    result = make_flow(page=page, store=store).run(make_account(target_password="New12345"))

    assert LoginState.FORCED_CREDENTIAL_CHANGE in result.transitions
    assert page.typed_into("chg_password_old") == ["Old12345"]
    assert page.typed_into("chg_password_new") == ["New12345"]
    assert page.typed_into("chg_password_confirm") == ["New12345"]
    assert page.typed_into("password") == ["Old12345", "New12345"]
    assert store.credentials == [("acc-1", None, "New12345")]
    assert result.passcode is None


def test_same_password_answer_counts_as_changed():
    page = FakePage()
    logins = []

    def after_login(p):
        logins.append(1)
        if len(logins) == 1:
            p.show(*PASSWORD_FORM)
        else:
            p.show("home")

    page.on_click("login_button", after_login)
    page.on_click("chg_password_submit",
                  lambda p: p.show(*LOGIN_FORM, chg_password_error="414 新密码不能与旧密码相同"))

    result = make_flow(page=page).run(make_account(password="Same1234", target_password="Same1234"))
    assert len(logins) == 2
    assert LoginState.SUCCESS in result.transitions


def test_refused_password_change_fails():
    page = FakePage()
    page.on_click("login_button", lambda p: p.show(*PASSWORD_FORM))
    page.on_click("chg_password_submit", lambda p: p.show(*PASSWORD_FORM, chg_password_error="415 密码太简单"))

    with pytest.raises(CredentialChangeFailed) as excinfo:
        make_flow(page=page).run(make_account(target_password="New12345"))
    assert excinfo.value.step == "password"


def test_username_form_without_target_needs_operator():
    page = FakePage()
    page.on_click("login_button", lambda p: p.show("chg_username_form", "chg_username_input", "chg_username_submit"))
    with pytest.raises(CredentialChangeRequired) as excinfo:
        make_flow(page=page).run(make_account())
    assert excinfo.value.step == "username"


def test_page_eviction_is_acknowledged_once():
    page = FakePage()
    logins = []

    def after_login(p):
        logins.append(1)
        if len(logins) == 1:
            p.show("eviction_dialog", "eviction_confirm")
        else:
            p.show("home")

    page.on_click("login_button", after_login)
    page.on_click("eviction_confirm", lambda p: p.show(*LOGIN_FORM))

    result = make_flow(page=page).run(make_account())
    assert result.transitions.count(LoginState.EVICTED) == 1
    assert SELECTORS["eviction_confirm"] in page.clicks


def test_page_evicted_twice_fails():
    page = FakePage()
    page.on_click("login_button", lambda p: p.show("eviction_dialog", "eviction_confirm"))
    page.on_click("eviction_confirm", lambda p: p.show(*LOGIN_FORM))

    with pytest.raises(SessionEvicted):
        make_flow(page=page).run(make_account())
    assert page.clicks.count(SELECTORS["login_button"]) == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
