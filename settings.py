import os
import dotenv

dotenv.load_dotenv()


def _env_float(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return float(default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}")


def _env_int(name, default):
    return int(_env_float(name, default))


def _env_bool(name, default=False):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


class Settings:
    """
    Runtime configuration read from the environment (.env is loaded on import).

    Every value can be overridden by keyword so tests and the CLI can build a
    Settings object without touching os.environ.
    """

    def __init__(self, **overrides):
        sites = os.getenv("CROWN_SITES", "")
        self.sites = [s.strip().rstrip("/") for s in sites.split(",") if s.strip()]
        self.base_url = (os.getenv("CROWN_BASE_URL") or "").rstrip("/") or None
        self.api_version = os.getenv("CROWN_API_VERSION", "2025-10-16-fix342_120")
        self.language = os.getenv("CROWN_LANGX", "zh-cn")

        # Endpoint registry
        self.health_check_interval = _env_float("HEALTH_CHECK_INTERVAL", 300)
        self.failure_threshold = _env_int("FAILURE_THRESHOLD", 3)
        self.site_cooldown = _env_float("SITE_COOLDOWN", 600)

        # Transport
        self.host_cooldown = _env_float("HOST_COOLDOWN", 180)
        self.request_timeout = _env_float("REQUEST_TIMEOUT", 30)
        self.ip_host_timeout = _env_float("IP_HOST_TIMEOUT", 8)

        # Sessions
        self.liveness_ttl = _env_float("LIVENESS_TTL", 30)
        self.heartbeat_ttl = _env_float("HEARTBEAT_TTL", 120)
        self.sweep_interval = _env_float("SWEEP_INTERVAL", 60)
        self.session_max_age = _env_float("SESSION_MAX_AGE", 7200)
        self.profile_dir = os.getenv("PROFILE_DIR", os.path.join(os.getcwd(), "profiles"))

        # Authentication
        self.login_wait_timeout = _env_float("LOGIN_WAIT_TIMEOUT", 20)
        self.passcode_wait_timeout = _env_float("PASSCODE_WAIT_TIMEOUT", 15)
        self.credential_wait_timeout = _env_float("CREDENTIAL_WAIT_TIMEOUT", 15)
        self.eviction_wait_timeout = _env_float("EVICTION_WAIT_TIMEOUT", 10)
        self.login_max_attempts = _env_int("LOGIN_MAX_ATTEMPTS", 2)
        self.use_browser_login = _env_bool("USE_BROWSER_LOGIN", False)
        self.headless = os.getenv("ENVIRONMENT") == "production"

        # Betting and settlement
        self.bet_max_workers = _env_int("BET_MAX_WORKERS", 10)
        self.ledger_file = os.getenv("LEDGER_FILE", "ledger.json")
        self.settlement_interval = _env_float("SETTLEMENT_INTERVAL", 300)
        self.missing_ticket_threshold = _env_int("MISSING_TICKET_THRESHOLD", 1)

        self.config_file = os.getenv("CONFIG_FILE", "config.json")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    def stage_timeouts(self):
        """Wait budget in seconds for each authentication stage"""
        return {
            "credentials_submitted": self.login_wait_timeout,
            "passcode_prompt": self.passcode_wait_timeout,
            "forced_credential_change": self.credential_wait_timeout,
            "evicted": self.eviction_wait_timeout,
        }
