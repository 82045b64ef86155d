import re
import json
import time
import base64
import random
import string
import threading
import requests
from datetime import datetime, timedelta

from logging_setup import get_logger
from site_registry import DEFAULT_SITE
from accounts import DESKTOP_USER_AGENT
from errors import (
    TransportError,
    ProtocolError,
    SessionEvicted,
    BetRejected,
    CredentialChangeFailed,
)

logger = get_logger('crown_api')

DEFAULT_VERSION = "2025-10-16-fix342_120"
COMMAND_PATH = "/transform.php"
DOUBLE_LOGIN_MARKER = "doublelogin"

LOGIN_SUCCESS = "100"
LOGIN_FORCE_PASSWORD_CHANGE = "109"
BET_ACCEPTED_CODE = "560"
PASSWORD_SAME_AS_OLD = "414"

ODDS_CACHE_SECONDS = 1.5
BALANCE_CACHE_SECONDS = 30

BET_ERROR_MESSAGES = {
    "555": "Market closed or unavailable",
    "1X015": "Market closed",
    "1X001": "Odds changed",
    "1X002": "Stake exceeds limit",
    "1X003": "Insufficient balance",
    "1X004": "Match finished",
    "1X005": "Match already started",
    "1X006": "System maintenance",
}

PASSWORD_CHANGE_ERRORS = {
    "411": "New password is empty",
    "412": "Confirmation password is empty",
    "413": "Passwords do not match",
    "414": "New password must differ from the old one",
    "415": "Password must be 6-12 characters with letters and digits",
    "416": "Password too simple",
    "417": "Password too simple",
    "418": "Old password is wrong",
    "419": "Password must differ from the login id",
}

DETAIL_COMMANDS = ["get_bet_detail", "bet_detail", "query_bet", "check_bet", "bet_status"]

VOID_PATTERN = re.compile(r"取消|無效|无效|void", re.IGNORECASE)
WAGER_TICKET_PATTERN = re.compile(r"OU(\d{6,})")
IP_HOST_PATTERN = re.compile(r"^https?://\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?$")


def to_text(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def to_float(value):
    """Parse platform amounts like "1,234.50"; "-" and garbage give None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[^0-9.\-]", "", str(value).replace(",", ""))
    if not cleaned or cleaned in ("-", ".", "-."):
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def format_amount(value):
    """50.0 -> "50", 12.5 -> "12.50" """
    amount = float(value)
    if amount.is_integer():
        return str(int(amount))
    return f"{amount:.2f}"


def to_ticket(value):
    if value is None:
        return None
    match = re.search(r"\d{6,}", str(value))
    return match.group(0) if match else None


class FieldRule:
    """
    One entry of a response extraction table.

    candidates are tried in order and the first one present whose normalized
    value is not None wins; default is used when none matches.
    """

    def __init__(self, field, candidates, normalize=to_text, default=None):
        self.field = field
        self.candidates = list(candidates)
        self.normalize = normalize or to_text
        self.default = default


LOGIN_FIELDS = [
    FieldRule("msg", ["msg"]),
    FieldRule("uid", ["uid"]),
    FieldRule("mid", ["mid"]),
    FieldRule("username", ["username"]),
    FieldRule("domain", ["domain", "login_domain"]),
    FieldRule("error", ["code_message", "errormsg", "err"]),
]

BALANCE_FIELDS = [
    FieldRule("credit", ["credit", "nowcredit", "maxcredit"], to_float),
    FieldRule("cash", ["cash", "balance"], to_float),
]

ODDS_FIELDS = [
    FieldRule("ioratio", ["ioratio"], to_float),
    FieldRule("ratio", ["ratio"], default="2000"),
    FieldRule("con", ["con"], default="0"),
    FieldRule("gold_min", ["gold_gmin", "gmin"], to_float),
    FieldRule("gold_max", ["gold_gmax", "gmax"], to_float),
]

BET_FIELDS = [
    FieldRule("code", ["code"]),
    FieldRule("ticket_id", ["ticket_id", "ticketID", "TicketID"], to_ticket),
    FieldRule("error", ["errormsg", "error_msg"]),
    FieldRule("odds", ["ioratio", "odds"], to_float),
]

CHANGE_FIELDS = [
    FieldRule("status", ["status"]),
    FieldRule("err", ["err"]),
]

WAGER_FIELDS = [
    FieldRule("gold", ["gold"], to_float),
    FieldRule("win_gold", ["win_gold", "wingold"], to_float),
    FieldRule("result_text", ["ball_act_ret", "push"]),
    FieldRule("score", ["result_data"]),
]

DETAIL_FIELDS = [
    FieldRule("win_gold", ["win_gold", "winGold", "wingold", "payout"], to_float),
    FieldRule("ball_act_ret", ["ballActRet", "ball_act_ret"]),
    FieldRule("result_text", ["result_text", "resultText", "push"]),
]

HISTORY_FIELDS = [
    FieldRule("date", ["date", "stat_date", "day"]),
    FieldRule("day_of_week", ["date_name", "dayOfWeek", "weekday"]),
    FieldRule("bet_amount", ["gold", "betAmount", "bet_amount", "tz"], to_float),
    FieldRule("valid_amount", ["vgold", "validAmount", "valid_amount", "yx"], to_float),
    FieldRule("win_loss", ["winloss", "winLoss", "win_loss", "yl"], to_float),
]

MATCH_FIELDS = [
    FieldRule("gid", ["GID", "gid"]),
    FieldRule("league", ["LEAGUE", "league"]),
    FieldRule("home", ["TEAM_H", "team_h", "TEAM_H_E"]),
    FieldRule("away", ["TEAM_C", "team_c", "TEAM_C_E"]),
    FieldRule("datetime", ["DATETIME", "datetime"]),
    FieldRule("score_h", ["SCORE_H", "score_h"]),
    FieldRule("score_c", ["SCORE_C", "score_c"]),
    FieldRule("status", ["RUNNING", "STATUS"]),
    FieldRule("retimeset", ["RETIMESET", "retimeset"]),
]


def extract_tag(body, name):
    """
    Find one loosely-typed field in a response body.

    Tries the XML form <name ...>value</name> first, then name=value /
    "name": "value" forms. Returns None when the field is absent.
    """
    if not body:
        return None
    xml = re.search(rf"<{re.escape(name)}(?:\s[^>]*)?>(.*?)</{re.escape(name)}>", body, re.S | re.I)
    if xml:
        value = re.sub(r"<!\[CDATA\[(.*?)\]\]>", r"\1", xml.group(1), flags=re.S)
        return value.strip()
    loose = re.search(rf"(?<![A-Za-z_]){re.escape(name)}[\"']?\s*[:=]\s*[\"']?([^\"'<>,&\s}}]+)", body)
    if loose:
        return loose.group(1)
    return None


def extract_fields(body, rules):
    """Evaluate an extraction table once against a text body or a parsed JSON dict"""
    result = {}
    for rule in rules:
        value = None
        for candidate in rule.candidates:
            if isinstance(body, dict):
                raw = body.get(candidate)
                if raw is None and isinstance(body.get("data"), dict):
                    raw = body["data"].get(candidate)
            else:
                raw = extract_tag(body, candidate)
            value = rule.normalize(raw)
            if value is not None:
                break
        result[rule.field] = value if value is not None else rule.default
    return result


def parse_json_body(body):
    """Return the body as a dict when the platform answered with JSON"""
    text = (body or "").strip()
    if not text.startswith("{"):
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def normalize_line(raw):
    """Clean a handicap / total line; quarter lines like "0/0.5" become "0.25" """
    if raw is None:
        return None
    cleaned = re.sub(r"[^\d./+-]", "", str(raw))
    if not cleaned:
        return None
    two_way = re.match(r"^([+-]?\d+(?:\.\d+)?)/([+-]?\d+(?:\.\d+)?)$", cleaned)
    if two_way:
        average = (float(two_way.group(1)) + float(two_way.group(2))) / 2
        return f"{average:g}"
    return cleaned


def _side(selection):
    text = (selection or "").strip().lower()
    if text in ("home", "h", "1") or text.startswith("home") or "主" in text:
        return "home"
    if text in ("away", "c", "2") or text.startswith("away") or "客" in text:
        return "away"
    if text in ("draw", "n", "x") or text.startswith("draw") or "和" in text or "平" in text:
        return "draw"
    if text.startswith("over") or "大" in text:
        return "over"
    if text.startswith("under") or "小" in text:
        return "under"
    return None


def map_market(market=None, selection=None, line=None, wtype=None, chose_team=None):
    """
    Translate a market description into the platform's (wtype, chose_team, line).

    An explicit wtype and chose_team pair is passed through unchanged.
    Moneyline maps to RM, handicap to RE and over/under to ROU, where over is
    chose_team C and under is H.
    """
    if wtype and chose_team:
        return str(wtype), str(chose_team), normalize_line(line)

    kind = (market or "").strip().lower()
    side = _side(selection)
    if line is None and selection:
        bracket = re.search(r"\(([^)]+)\)", selection)
        if bracket:
            line = bracket.group(1)
    line = normalize_line(line)

    if re.search(r"handicap|让|讓|\bah\b", kind):
        return "RE", "H" if side == "home" else "C", line
    if re.search(r"over|under|total|大小|\bou\b", kind):
        return "ROU", "H" if side == "under" else "C", line

    team = {"home": "H", "away": "C", "draw": "N"}.get(side, "C")
    return "RM", team, line


def ticket_variants(ticket_id):
    """Both spellings of a ticket: the raw number and the OU-prefixed form"""
    text = str(ticket_id or "").strip()
    if not text:
        return []
    number = text[2:] if text.upper().startswith("OU") else text
    return [f"OU{number}", number]


def parse_matches(body):
    """Parse a get_game_list body into match dicts"""
    matches = []
    for block in re.finditer(r"<game\b([^>]*)>(.*?)</game>", body or "", re.S | re.I):
        attrs, content = block.group(1), block.group(2)
        fields = extract_fields(content, MATCH_FIELDS)
        if not fields["gid"]:
            attr_id = re.search(r'id="(\d+)', attrs, re.I)
            fields["gid"] = attr_id.group(1) if attr_id else None

        score = None
        if fields["score_h"] or fields["score_c"]:
            score = f"{fields['score_h'] or '0'}-{fields['score_c'] or '0'}"
        period = clock = None
        retime = fields["retimeset"] or ""
        if "^" in retime:
            period, clock = [part.strip() for part in retime.split("^", 1)]

        if fields["league"] or (fields["home"] and fields["away"]):
            matches.append({
                "gid": fields["gid"],
                "league": fields["league"],
                "home": fields["home"],
                "away": fields["away"],
                "time": fields["datetime"],
                "score": score,
                "status": fields["status"],
                "period": period,
                "clock": clock,
            })
    return matches


def parse_wagers(body):
    """
    Parse a history_switch body into wager dicts.

    Tickets appear as OU<digits>; the fields of a ticket are read from the
    text that follows it up to the next ticket.
    """
    wagers = []
    seen = set()
    found = list(WAGER_TICKET_PATTERN.finditer(body or ""))
    for index, match in enumerate(found):
        ticket_id = match.group(0)
        if ticket_id in seen:
            continue
        seen.add(ticket_id)
        end = found[index + 1].start() if index + 1 < len(found) else len(body)
        section = body[match.start():min(end, match.start() + 1500)]
        fields = extract_fields(section, WAGER_FIELDS)
        score = fields["score"]
        if score:
            score = re.sub(r"\s*-\s*", "-", score)
        wagers.append({
            "ticket_id": ticket_id,
            "gold": fields["gold"],
            "win_gold": fields["win_gold"],
            "result_text": fields["result_text"] or "",
            "score": score,
        })
    return wagers


def parse_history(body):
    """Parse daily account summaries from the XML <history> blocks or a JSON body"""
    items = []
    data = parse_json_body(body)
    if data is not None:
        rows = None
        for container in (data, data.get("data"), data.get("result")):
            if isinstance(container, list):
                rows = container
            elif isinstance(container, dict):
                for key in ("list", "rows", "history", "records", "items"):
                    if isinstance(container.get(key), list):
                        rows = container[key]
                        break
            if rows is not None:
                break
        for row in rows or []:
            if isinstance(row, dict):
                items.append(extract_fields(row, HISTORY_FIELDS))
    else:
        for block in re.finditer(r"<history>(.*?)</history>", body or "", re.S):
            items.append(extract_fields(block.group(1), HISTORY_FIELDS))

    # "-" amounts mark days without activity
    return [
        item for item in items
        if item["date"] and None not in (item["bet_amount"], item["valid_amount"], item["win_loss"])
    ]


class HostCooldown:
    """Per-host cooldown windows; expired entries are dropped on access"""

    def __init__(self, cooldown_seconds):
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self.__until = {}
        self.__lock = threading.Lock()

    def set(self, host, now=None):
        now = now if now is not None else time.time()
        with self.__lock:
            self.__until[host] = now + self.cooldown_seconds
            return self.__until[host]

    def active(self, host, now=None):
        now = now if now is not None else time.time()
        with self.__lock:
            until = self.__until.get(host)
            if until is None:
                return False
            if now >= until:
                del self.__until[host]
                return False
            return True

    def remaining(self, host, now=None):
        now = now if now is not None else time.time()
        with self.__lock:
            return max(0.0, self.__until.get(host, 0.0) - now)


class CrownClient:
    """
    Transport client for the Crown command protocol.

    Every command is a form-encoded POST to <host>/transform.php with p=<command>.
    A request walks the candidate hosts (last good host, the domain handed out
    at login, then the registry's current endpoint) until one answers; hosts
    that time out are cooled down and every attempt is reported to the site
    registry. A body containing doubleLogin raises SessionEvicted.

    One client belongs to one account and is not shared across accounts.
    """

    def __init__(self, registry=None, base_url=None, proxy=None, user_agent=None,
                 version=DEFAULT_VERSION, langx="zh-cn", timeout=30, ip_host_timeout=8,
                 host_cooldown=180, session=None, account_id=None):
        self.registry = registry
        self.account_id = account_id
        self.version = version
        self.langx = langx
        self.user_agent = user_agent or DESKTOP_USER_AGENT
        self.__base_url = base_url.rstrip("/") if base_url else None
        self.__timeout = timeout
        self.__ip_host_timeout = ip_host_timeout
        self.__cooldown = HostCooldown(host_cooldown)
        self.__lock = threading.RLock()

        self.__session = session or requests.Session()
        self.__session.headers.update({
            "User-Agent": self.user_agent,
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "*/*",
        })
        if proxy:
            self.__session.proxies.update({"http": proxy, "https": proxy})

        self.uid = None
        self.mid = None
        self.username = None
        self.password = None
        self.login_domain = None
        self.last_good_host = None

        self.__odds_cache = {}
        self.__balance_cache = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def base_url(self):
        if self.__base_url:
            return self.__base_url
        if self.registry:
            return self.registry.current_endpoint()
        return DEFAULT_SITE

    def host_candidates(self):
        """Ordered, de-duplicated hosts to try for the next request"""
        raw = []

        def push(host):
            if not host:
                return
            host = host.strip().rstrip("/")
            if host.startswith("http"):
                raw.append(host)
            else:
                raw.append(f"https://{host}")
                raw.append(f"http://{host}")

        push(self.last_good_host)
        push(self.login_domain)
        push(self.base_url())

        hosts = []
        for host in raw:
            if host not in hosts:
                hosts.append(host)
        return hosts

    def is_cooling_down(self, host):
        return self.__cooldown.active(host)

    def __timeout_for(self, host):
        return self.__ip_host_timeout if IP_HOST_PATTERN.match(host) else self.__timeout

    def __report_success(self, host, latency_ms):
        if self.registry and self.registry.has_site(host):
            self.registry.report_success(host, latency_ms)

    def __report_failure(self, host):
        if self.registry and self.registry.has_site(host):
            self.registry.report_failure(host)

    def send(self, command, params=None, require_login=True):
        """
        POST one command and return the response body.

        Raises:
        - SessionEvicted when not logged in or the body carries doubleLogin
        - TransportError when no candidate host answered
        """
        data = {"p": command, "ver": self.version, "langx": self.langx}
        if require_login:
            if not self.uid:
                raise SessionEvicted("not logged in", self.account_id)
            data["uid"] = self.uid
        data.update(params or {})

        candidates = self.host_candidates()
        hosts = [h for h in candidates if not self.__cooldown.active(h)]
        if not hosts:
            # Everything is cooling down; the base host is still worth a try
            hosts = candidates[-1:]

        last_error = None
        for host in hosts:
            url = f"{host}{COMMAND_PATH}?ver={self.version}"
            start = time.time()
            try:
                response = self.__session.post(url, data=data, timeout=self.__timeout_for(host), verify=False)
            except requests.Timeout as e:
                self.__cooldown.set(host)
                self.__report_failure(host)
                logger.warning(f"⏱️  {command} timed out on {host}, cooling down for {self.__cooldown.cooldown_seconds:.0f}s")
                last_error = e
                continue
            except requests.RequestException as e:
                self.__report_failure(host)
                logger.warning(f"⚠️  {command} failed on {host}: {e}")
                last_error = e
                continue

            latency_ms = int((time.time() - start) * 1000)
            if response.status_code >= 500:
                self.__report_failure(host)
                last_error = f"HTTP {response.status_code}"
                logger.warning(f"⚠️  {command} got HTTP {response.status_code} from {host}")
                continue

            self.__report_success(host, latency_ms)
            self.last_good_host = host
            body = response.text or ""
            if DOUBLE_LOGIN_MARKER in body.lower():
                logger.warning(f"🚪 Account {self.account_id}: doubleLogin in {command} response")
                raise SessionEvicted(f"{command}: session invalidated (doubleLogin)", self.account_id)
            return body

        raise TransportError(f"{command} failed on every host: {last_error}", self.account_id)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def is_logged_in(self):
        return bool(self.uid)

    def clear_identity(self):
        with self.__lock:
            self.uid = None
            self.mid = None
            self.__session.cookies.clear()
            self.__odds_cache.clear()
            self.__balance_cache = None

    def export_identity(self):
        """Snapshot of the transport identity for persisting a session"""
        return {
            "uid": self.uid,
            "mid": self.mid,
            "username": self.username,
            "login_domain": self.login_domain,
            "last_good_host": self.last_good_host,
            "cookies": self.__session.cookies.get_dict(),
            "saved_at": time.time(),
        }

    def restore_identity(self, blob):
        """Load an identity produced by export_identity; returns False when it has no uid"""
        if not blob or not blob.get("uid"):
            return False
        with self.__lock:
            self.uid = blob.get("uid")
            self.mid = blob.get("mid")
            self.username = blob.get("username") or self.username
            self.login_domain = blob.get("login_domain")
            self.last_good_host = blob.get("last_good_host")
            for name, value in (blob.get("cookies") or {}).items():
                self.__session.cookies.set(name, value)
        return True

    def adopt_cookies(self, cookies):
        """Copy browser cookies (dict or selenium cookie list) into the HTTP session"""
        if isinstance(cookies, list):
            cookies = {c["name"]: c["value"] for c in cookies if "name" in c}
        for name, value in (cookies or {}).items():
            self.__session.cookies.set(name, value)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def __blackbox(self):
        alphabet = string.ascii_letters + string.digits
        return "".join(random.choice(alphabet) for _ in range(64))

    def login(self, username, password):
        """
        Submit chk_login.

        Returns a dict with success, msg, uid, mid, username and
        force_password_change (msg 109). A rejected login is returned with
        success False; doubleLogin raises SessionEvicted.
        """
        params = {
            "username": username,
            "password": password,
            "app": "N",
            "auto": "CFHFID",
            "blackbox": self.__blackbox(),
            "userAgent": base64.b64encode(self.user_agent.encode()).decode(),
        }
        body = self.send("chk_login", params, require_login=False)
        fields = extract_fields(parse_json_body(body) or body, LOGIN_FIELDS)
        msg = fields["msg"]

        if msg in (LOGIN_SUCCESS, LOGIN_FORCE_PASSWORD_CHANGE):
            if not fields["uid"]:
                raise ProtocolError(f"login accepted (msg={msg}) without uid", self.account_id)
            with self.__lock:
                self.uid = fields["uid"]
                self.mid = fields["mid"]
                self.login_domain = fields["domain"]
                self.username = fields["username"] or username
                self.password = password
            logger.info(f"✅ Account {self.account_id}: chk_login accepted (msg={msg})")
            return {
                "success": True,
                "msg": msg,
                "uid": self.uid,
                "mid": self.mid,
                "username": self.username,
                "force_password_change": msg == LOGIN_FORCE_PASSWORD_CHANGE,
            }

        if msg is None and fields["error"] is None:
            raise ProtocolError("login response carries neither msg nor error", self.account_id)

        logger.warning(f"❌ Account {self.account_id}: chk_login rejected (msg={msg}, error={fields['error']})")
        return {"success": False, "msg": msg, "error": fields["error"] or f"login rejected: {msg}"}

    def logout(self):
        self.clear_identity()
        self.username = None
        self.password = None

    def get_matches(self, gtype="ft", showtype="live", rtype="rb", ltype="3", sorttype="L"):
        body = self.send("get_game_list", {
            "p3type": "",
            "date": "",
            "gtype": gtype,
            "showtype": showtype,
            "rtype": rtype,
            "ltype": ltype,
            "filter": "",
            "cupFantasy": "N",
            "sorttype": sorttype,
            "specialClick": "",
            "isFantasy": "N",
            "ts": str(int(time.time() * 1000)),
        })
        return parse_matches(body)

    def get_odds(self, gid, wtype="RM", chose_team="C", gtype="FT", force=False):
        """FT_order_view for one selection; answers are cached briefly per gid/wtype/team"""
        key = (str(gid), wtype, chose_team)
        now = time.time()
        with self.__lock:
            cached = self.__odds_cache.get(key)
            if cached and not force and now - cached["ts"] < ODDS_CACHE_SECONDS:
                return dict(cached, cached=True)

        body = self.send("FT_order_view", {
            "odd_f_type": "H",
            "gid": gid,
            "gtype": gtype,
            "wtype": wtype,
            "chose_team": chose_team,
        })
        odds = extract_fields(parse_json_body(body) or body, ODDS_FIELDS)
        odds["ts"] = now
        with self.__lock:
            self.__odds_cache[key] = odds
        return dict(odds, cached=False)

    def get_balance(self, force=False):
        """
        Balance and credit from get_member_data.

        The first non-null figure wins: credit, nowcredit and maxcredit are
        preferred over cash and balance.
        """
        now = time.time()
        with self.__lock:
            if not force and self.__balance_cache and now - self.__balance_cache["ts"] < BALANCE_CACHE_SECONDS:
                return {"balance": self.__balance_cache["balance"], "credit": self.__balance_cache["credit"]}

        body = self.send("get_member_data", {"change": "all"})
        figures = extract_fields(body, BALANCE_FIELDS)
        effective = figures["credit"] if figures["credit"] is not None else figures["cash"]
        if effective is None:
            logger.warning(f"Account {self.account_id}: no balance field in member data")
            return {"balance": None, "credit": None}

        with self.__lock:
            self.__balance_cache = {"balance": effective, "credit": figures["credit"], "ts": now}
        return {"balance": effective, "credit": figures["credit"]}

    def clear_balance_cache(self):
        with self.__lock:
            self.__balance_cache = None

    def check_alive(self):
        """Cheap liveness probe: member data answers without an eviction"""
        if not self.uid:
            return False
        try:
            self.send("get_member_data", {"change": "all"})
            return True
        except SessionEvicted:
            return False
        except TransportError as e:
            logger.warning(f"Account {self.account_id}: liveness probe failed: {e}")
            return False

    def keepalive(self):
        """get_systemTime ping keeping the platform session warm"""
        try:
            self.send("get_systemTime")
            return True
        except TransportError:
            return False

    def place_bet(self, gid, wtype, chose_team, gold, min_odds=None, ioratio=None,
                  ratio=None, con=None, odd_f_type="H"):
        """
        Submit FT_bet for one selection.

        Current odds are fetched with FT_order_view unless ioratio is given.
        When min_odds is set and the current odds are below it, BetRejected
        is raised with code "odds_below_minimum" before anything is submitted.

        Returns a dict with ticket_id (may be None), odds and raw body.
        Raises BetRejected with the platform code when the order is refused.
        """
        quoted = None
        if ioratio is None or ratio is None or con is None:
            try:
                quoted = self.get_odds(gid, wtype, chose_team, force=True)
            except TransportError as e:
                logger.warning(f"Account {self.account_id}: odds preview failed, submitting anyway: {e}")

        if ioratio is None and quoted:
            ioratio = quoted["ioratio"]
        ratio = ratio if ratio is not None else (quoted["ratio"] if quoted else "2000")
        con = con if con is not None else (quoted["con"] if quoted else "0")

        current_odds = to_float(ioratio)
        if min_odds is not None and current_odds is not None and current_odds > 0 and current_odds < min_odds:
            raise BetRejected(
                f"current odds {current_odds} below minimum {min_odds}",
                self.account_id,
                code="odds_below_minimum",
            )

        body = self.send("FT_bet", {
            "odd_f_type": odd_f_type,
            "golds": format_amount(gold),
            "gid": gid,
            "gtype": "FT",
            "wtype": wtype,
            "rtype": f"{wtype}{chose_team}",
            "chose_team": chose_team,
            "ioratio": "" if ioratio is None else str(ioratio),
            "con": str(con),
            "ratio": str(ratio),
            "autoOdd": "Y",
            "timestamp": str(int(time.time() * 1000)),
            "timestamp2": "",
            "isRB": "Y" if wtype.startswith("R") else "N",
            "imp": "N",
            "ptype": "",
            "isYesterday": "N",
            "f": "1R",
        })
        return self.__parse_bet_response(body, current_odds)

    def __parse_bet_response(self, body, current_odds):
        parsed = parse_json_body(body)
        fields = extract_fields(parsed if parsed is not None else body, BET_FIELDS)
        code = fields["code"]

        accepted = code == BET_ACCEPTED_CODE or fields["ticket_id"] is not None
        if parsed is None and not accepted:
            accepted = "下注成功" in body
        if parsed is not None and not accepted:
            accepted = "success" in str(parsed.get("status", "")).lower()

        if accepted:
            ticket_id = fields["ticket_id"]
            if ticket_id is None and parsed is None:
                found = re.search(r"(?:注单号|ticket|TicketID)[^0-9]*([0-9]{6,})", body, re.I)
                ticket_id = found.group(1) if found else None
            self.clear_balance_cache()
            odds = fields["odds"] if fields["odds"] is not None else current_odds
            logger.info(f"✅ Account {self.account_id}: bet accepted (ticket {ticket_id or 'pending'})")
            return {"ticket_id": ticket_id, "odds": odds, "raw": body}

        error = fields["error"]
        known = code if code in BET_ERROR_MESSAGES else (error if error in BET_ERROR_MESSAGES else None)
        if known:
            message = BET_ERROR_MESSAGES[known]
            reject_code = known
        elif code or error:
            reject_code = code or error
            message = f"bet failed ({reject_code})"
        else:
            raise ProtocolError("bet response carries no code, ticket or error", self.account_id)

        logger.warning(f"❌ Account {self.account_id}: bet rejected: {message}")
        raise BetRejected(message, self.account_id, code=reject_code)

    def get_history(self, start_date=None, end_date=None, gtype="ALL"):
        """
        Daily summaries (bet amount, valid amount, win/loss) between two YYYY-MM-DD dates.

        An empty answer is retried once after a get_systemTime keepalive.
        """
        today = datetime.now().strftime("%Y-%m-%d")
        params = {
            "gtype": gtype,
            "isAll": "N",
            "startdate": start_date or today,
            "enddate": end_date or today,
            "filter": "Y",
        }
        history = parse_history(self.send("get_history_data", params))
        if not history and self.keepalive():
            history = parse_history(self.send("get_history_data", params))
        return history

    def get_wagers(self, date=None):
        """
        Wager list for one day via history_switch.

        date defaults to yesterday because tickets are usually settled there.
        """
        if not date:
            date = (datetime.now() - timedelta(days=1)).strftime("%Y-%m-%d")
        body = self.send("history_switch", {
            "LS": "c",
            "today_gmt": date,
            "gtype": "ALL",
            "tmp_flag": "Y",
        })
        return parse_wagers(body)

    def get_bet_detail(self, ticket_id):
        """
        Look a ticket up through the detail command family.

        Returns a dict with win_gold, ball_act_ret and result_text from the
        first command that answers with wager fields. Returns None only when
        at least one command answered and none knew the ticket.

        Raises:
        - TransportError when every command failed at transport level
        """
        last_error = None
        answered = False
        for command in DETAIL_COMMANDS:
            try:
                body = self.send(command, {"ticket_id": ticket_id})
            except TransportError as e:
                logger.warning(f"Account {self.account_id}: {command} failed for ticket {ticket_id}: {e}")
                last_error = e
                continue

            answered = True
            fields = extract_fields(body, DETAIL_FIELDS)
            if fields["win_gold"] is not None or fields["ball_act_ret"] or fields["result_text"]:
                return {
                    "ticket_id": ticket_id,
                    "win_gold": fields["win_gold"],
                    "ball_act_ret": fields["ball_act_ret"] or "",
                    "result_text": fields["result_text"] or "",
                }

        if not answered:
            raise last_error
        return None

    def change_username(self, new_username):
        """chg_username; raises CredentialChangeFailed(step="username") when refused"""
        body = self.send("chg_username", {"username": new_username})
        fields = extract_fields(body, CHANGE_FIELDS)
        if fields["status"] == "error":
            code = fields["err"] or "unknown"
            raise CredentialChangeFailed(
                f"login id change refused (code {code})", self.account_id, step="username", code=code
            )
        self.username = new_username
        logger.info(f"🔑 Account {self.account_id}: login id changed")
        return True

    def change_password(self, new_password, current_password=None):
        """
        chg_newpwd with the confirmation equal to the new password.

        A 414 "must differ" answer counts as done when the new password is the
        one already active.
        """
        current_password = current_password if current_password is not None else self.password
        body = self.send("chg_newpwd", {"new_password": new_password, "chg_password": new_password})
        fields = extract_fields(body, CHANGE_FIELDS)
        if fields["status"] == "error":
            code = fields["err"] or "unknown"
            if code == PASSWORD_SAME_AS_OLD and new_password == current_password:
                logger.info(f"🔑 Account {self.account_id}: password already set to target")
                self.password = new_password
                return True
            message = PASSWORD_CHANGE_ERRORS.get(code, f"password change refused (code {code})")
            raise CredentialChangeFailed(message, self.account_id, step="password", code=code)
        self.password = new_password
        logger.info(f"🔑 Account {self.account_id}: password changed")
        return True
