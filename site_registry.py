import time
import threading
import requests
import urllib3
from concurrent.futures import ThreadPoolExecutor

from logging_setup import get_logger

logger = get_logger('crown_sites')

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

# Static mirror list: (url, name, category)
DEFAULT_SITES = [
    ("https://hga026.com", "HGA026", "hga"),
    ("https://hga027.com", "HGA027", "hga"),
    ("https://hga030.com", "HGA030", "hga"),
    ("https://hga035.com", "HGA035", "hga"),
    ("https://hga038.com", "HGA038", "hga"),
    ("https://hga039.com", "HGA039", "hga"),
    ("https://hga050.com", "HGA050", "hga"),
    ("https://mos011.com", "MOS011", "mos"),
    ("https://mos022.com", "MOS022", "mos"),
    ("https://mos033.com", "MOS033", "mos"),
    ("https://mos055.com", "MOS055", "mos"),
    ("https://mos066.com", "MOS066", "mos"),
    ("https://mos100.com", "MOS100", "mos"),
]
DEFAULT_SITE = "https://hga050.com"
HEALTH_CHECK_PATH = "/app/member/FT_browse/index.php"

ONLINE = "online"
OFFLINE = "offline"
UNKNOWN = "unknown"


class CrownSite:
    """One interchangeable platform mirror and its health counters"""

    def __init__(self, url, name=None, category="hga"):
        self.url = url.rstrip("/")
        self.name = name or self.url.split("//")[-1].split(".")[0].upper()
        self.category = category
        self.status = UNKNOWN
        self.failure_count = 0
        self.last_success_at = None
        self.last_check_at = None
        self.offline_since = None
        self.response_time_ms = None
        self.is_active = False
        self.lock = threading.Lock()

    def to_dict(self):
        return {
            "url": self.url,
            "name": self.name,
            "category": self.category,
            "status": self.status,
            "failure_count": self.failure_count,
            "last_success_at": self.last_success_at,
            "last_check_at": self.last_check_at,
            "response_time_ms": self.response_time_ms,
            "is_active": self.is_active,
        }


class SiteRegistry:
    """
    Tracks the mirror pool, picks the current endpoint and fails over when the
    current one keeps failing.

    Every mutation of a site's counters happens under that site's lock, and
    switching the current site happens under the registry lock, so workers for
    different accounts can report into the registry concurrently.

    Parameters:
    - sites: list of (url, name, category) tuples or plain urls; defaults to the static mirror list
    - default_site: url to start on; falls back to CROWN_BASE_URL semantics handled by Settings
    - failure_threshold: consecutive failures before a site is marked offline
    - cooldown_seconds: how long an offline site is kept out of last-resort failover
    - health_check_interval: seconds between background probes
    - probe: optional callable(url) -> dict(success, response_time_ms, error) replacing the HTTP probe
    """

    def __init__(self, sites=None, default_site=None, failure_threshold=3, cooldown_seconds=600,
                 health_check_interval=300, probe=None, session=None):
        self.__lock = threading.RLock()
        self.__sites = {}
        self.__failure_threshold = max(1, int(failure_threshold))
        self.__cooldown_seconds = cooldown_seconds
        self.__health_check_interval = health_check_interval
        self.__probe = probe
        self.__session = session or requests.Session()
        self.__stop_event = threading.Event()
        self.__health_thread = None

        for entry in (sites or DEFAULT_SITES):
            if isinstance(entry, str):
                site = CrownSite(entry)
            else:
                site = CrownSite(*entry)
            self.__sites[site.url] = site

        if not self.__sites:
            raise ValueError("SiteRegistry needs at least one site")

        default_site = (default_site or "").rstrip("/")
        if default_site and default_site not in self.__sites:
            # A configured base url that is not a known mirror still joins the pool
            self.__sites[default_site] = CrownSite(default_site)
        if not default_site:
            default_site = DEFAULT_SITE if DEFAULT_SITE in self.__sites else next(iter(self.__sites))

        self.__current = default_site
        self.__sites[default_site].is_active = True
        logger.info(f"🌐 Initialized {len(self.__sites)} Crown sites, current: {default_site}")

    @property
    def failure_threshold(self):
        return self.__failure_threshold

    def current_endpoint(self):
        with self.__lock:
            return self.__current

    def current_site_info(self):
        with self.__lock:
            return self.__sites.get(self.__current)

    def get_site(self, url):
        return self.__sites.get((url or "").rstrip("/"))

    def all_sites(self):
        return list(self.__sites.values())

    def has_site(self, url):
        return self.get_site(url) is not None

    def switch_to(self, url):
        """Manually switch the current site. Returns False for unknown urls."""
        url = (url or "").rstrip("/")
        with self.__lock:
            site = self.__sites.get(url)
            if not site:
                logger.error(f"❌ Site does not exist: {url}")
                return False
            old_site = self.__current
            self.__current = url
            for s in self.__sites.values():
                s.is_active = s.url == url
        logger.info(f"🔄 Site switched: {old_site} → {url}")
        return True

    def auto_failover(self, exclude=None):
        """
        Switch to the online site with the lowest response time.

        Parameters:
        - exclude: url to leave out (defaults to the current site)

        Returns:
        - The new current url, or None when no alternative is available
        """
        with self.__lock:
            exclude = (exclude or self.__current).rstrip("/")
            candidates = [s for s in self.__sites.values() if s.url != exclude]

            online = [s for s in candidates if s.status == ONLINE]
            if online:
                best = min(online, key=lambda s: s.response_time_ms if s.response_time_ms is not None else 9999)
            else:
                best = self.__last_resort(candidates)

            if not best:
                logger.warning("⚠️  No fallback site available")
                return None

            self.switch_to(best.url)

        if best.response_time_ms is not None:
            logger.info(f"✅ Failed over to {best.name} ({best.response_time_ms}ms)")
        else:
            logger.info(f"✅ Failed over to {best.name} (status {best.status})")
        return best.url

    def __last_resort(self, candidates):
        unknown = [s for s in candidates if s.status == UNKNOWN]
        if unknown:
            return unknown[0]
        now = time.time()
        cooled = [s for s in candidates
                  if s.status == OFFLINE and s.offline_since is not None
                  and now - s.offline_since >= self.__cooldown_seconds]
        if cooled:
            return min(cooled, key=lambda s: s.offline_since)
        return None

    def __record_failure(self, site):
        """Count one failure and take the site offline at the threshold"""
        with site.lock:
            site.failure_count += 1
            site.last_check_at = time.time()
            logger.warning(f"⚠️  Site request failed: {site.name} (failures: {site.failure_count})")
            if site.failure_count >= self.__failure_threshold and site.status != OFFLINE:
                site.status = OFFLINE
                site.offline_since = time.time()
                logger.error(f"❌ Site marked offline: {site.name}")

    def report_failure(self, url):
        site = self.get_site(url)
        if not site:
            return

        self.__record_failure(site)
        if site.status == OFFLINE and site.url == self.current_endpoint():
            self.auto_failover(exclude=site.url)

    def report_success(self, url, latency_ms=None):
        site = self.get_site(url)
        if not site:
            return
        with site.lock:
            now = time.time()
            site.failure_count = 0
            site.status = ONLINE
            site.offline_since = None
            site.last_success_at = now
            site.last_check_at = now
            if latency_ms is not None:
                site.response_time_ms = int(latency_ms)

    def check_site_health(self, url):
        """Probe one site; any HTTP answer below 500 counts as reachable"""
        if self.__probe:
            return self.__probe(url)

        start = time.time()
        try:
            response = self.__session.get(f"{url}{HEALTH_CHECK_PATH}", timeout=10, verify=False)
            elapsed = int((time.time() - start) * 1000)
            success = response.status_code < 500
            return {
                "url": url,
                "success": success,
                "response_time_ms": elapsed,
                "error": None if success else f"HTTP {response.status_code}",
            }
        except requests.RequestException as e:
            return {
                "url": url,
                "success": False,
                "response_time_ms": int((time.time() - start) * 1000),
                "error": str(e) or "connection failed",
            }

    def perform_health_check(self):
        """Probe every site concurrently and fail over if the current one went offline"""
        logger.info("🏥 Starting site health check...")
        urls = list(self.__sites.keys())
        with ThreadPoolExecutor(max_workers=min(8, len(urls))) as executor:
            results = list(executor.map(self.check_site_health, urls))

        online_count = 0
        offline_count = 0
        for result in results:
            site = self.get_site(result["url"])
            if not site:
                continue
            if result.get("success"):
                self.report_success(site.url, result.get("response_time_ms"))
                online_count += 1
            else:
                self.__record_failure(site)
                if site.status == OFFLINE:
                    offline_count += 1

        logger.info(f"✅ Health check finished: {online_count} online, {offline_count} offline")

        current = self.current_site_info()
        if current and current.status == OFFLINE:
            logger.warning(f"⚠️  Current site {current.name} is offline, trying automatic failover...")
            self.auto_failover(exclude=current.url)
        return results

    def trigger_health_check(self):
        return self.perform_health_check()

    def start_health_check(self):
        """Run one probe immediately and then every health_check_interval seconds"""
        if self.__health_thread and self.__health_thread.is_alive():
            logger.warning("Health check already running")
            return
        self.__stop_event.clear()
        self.__health_thread = threading.Thread(target=self.__health_loop, daemon=True)
        self.__health_thread.start()
        logger.info(f"⏰ Started site health check (interval: {self.__health_check_interval}s)")

    def __health_loop(self):
        while not self.__stop_event.is_set():
            try:
                self.perform_health_check()
            except Exception as e:
                logger.error(f"Health check failed: {e}")
            self.__stop_event.wait(self.__health_check_interval)

    def stop_health_check(self):
        self.__stop_event.set()
        if self.__health_thread and self.__health_thread.is_alive():
            self.__health_thread.join(timeout=5)
        self.__health_thread = None
        logger.info("⏹️  Stopped site health check")

    def to_dict(self):
        return {
            "current": self.current_endpoint(),
            "sites": [s.to_dict() for s in self.all_sites()],
        }
