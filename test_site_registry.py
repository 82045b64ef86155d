#!/usr/bin/env python3
"""
Tests for the mirror registry: failure counting, failover and health checks
"""

import time
import logging

import pytest

from site_registry import SiteRegistry, ONLINE, OFFLINE, UNKNOWN

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SITE_A = "https://a.example"
SITE_B = "https://b.example"
SITE_C = "https://c.example"


def make_registry(probe_results=None, **kwargs):
    probe_results = probe_results or {}

    def probe(url):
        ok, latency = probe_results.get(url, (False, None))
        return {"url": url, "success": ok, "response_time_ms": latency, "error": None if ok else "down"}

    kwargs.setdefault("failure_threshold", 3)
    return SiteRegistry(sites=[SITE_A, SITE_B, SITE_C], default_site=SITE_A, probe=probe, **kwargs)


def test_starts_on_default_site():
    registry = make_registry()
    assert registry.current_endpoint() == SITE_A
    assert registry.current_site_info().is_active
    assert all(site.status == UNKNOWN for site in registry.all_sites())


def test_failures_below_threshold_keep_site():
    registry = make_registry()
    registry.report_failure(SITE_A)
    registry.report_failure(SITE_A)
    site = registry.get_site(SITE_A)
    assert site.failure_count == 2
    assert site.status == UNKNOWN
    assert registry.current_endpoint() == SITE_A


def test_success_resets_failure_count():
    registry = make_registry()
    registry.report_failure(SITE_A)
    registry.report_failure(SITE_A)
    registry.report_success(SITE_A, 80)
    site = registry.get_site(SITE_A)
    assert site.failure_count == 0
    assert site.status == ONLINE
    assert site.response_time_ms == 80


def test_threshold_marks_offline_and_fails_over_to_fastest():
    registry = make_registry()
    registry.report_success(SITE_B, 120)
    registry.report_success(SITE_C, 300)

    for _ in range(3):
        registry.report_failure(SITE_A)

    assert registry.get_site(SITE_A).status == OFFLINE
    assert registry.current_endpoint() == SITE_B
    assert registry.get_site(SITE_B).is_active
    assert not registry.get_site(SITE_A).is_active


def test_failover_uses_unknown_site_when_none_online():
    registry = make_registry()
    for _ in range(3):
        registry.report_failure(SITE_A)
    assert registry.current_endpoint() in (SITE_B, SITE_C)


def test_failover_returns_none_when_everything_is_cooling_down():
    registry = make_registry(cooldown_seconds=600)
    for url in (SITE_B, SITE_C):
        for _ in range(3):
            registry.report_failure(url)
    assert registry.auto_failover() is None
    assert registry.current_endpoint() == SITE_A


def test_offline_site_is_last_resort_after_cooldown():
    registry = make_registry(cooldown_seconds=60)
    for url in (SITE_B, SITE_C):
        for _ in range(3):
            registry.report_failure(url)
    registry.get_site(SITE_C).offline_since = time.time() - 120

    assert registry.auto_failover() == SITE_C


def test_health_check_picks_lowest_latency():
    registry = make_registry({SITE_B: (True, 120), SITE_C: (True, 300)})
    for _ in range(2):
        registry.perform_health_check()
        assert registry.current_endpoint() == SITE_A
    results = registry.perform_health_check()

    assert len(results) == 3
    assert registry.get_site(SITE_A).status == OFFLINE
    assert registry.get_site(SITE_B).status == ONLINE
    assert registry.current_endpoint() == SITE_B
    logger.info(f"Registry after health check: {registry.to_dict()}")


def test_request_and_health_check_failures_share_one_count():
    registry = make_registry({SITE_B: (True, 100), SITE_C: (True, 200)})
    registry.report_failure(SITE_A)
    registry.report_failure(SITE_A)
    assert registry.get_site(SITE_A).status == UNKNOWN

    registry.perform_health_check()

    site = registry.get_site(SITE_A)
    assert site.failure_count == 3
    assert site.status == OFFLINE
    assert site.offline_since is not None
    assert registry.current_endpoint() == SITE_B


def test_switch_to_unknown_site_is_refused():
    registry = make_registry()
    assert not registry.switch_to("https://nowhere.example")
    assert registry.switch_to(SITE_C)
    assert registry.current_endpoint() == SITE_C


def test_unknown_urls_are_ignored_by_reports():
    registry = make_registry()
    registry.report_failure("https://nowhere.example")
    registry.report_success("https://nowhere.example", 10)
    assert not registry.has_site("https://nowhere.example")


def test_configured_base_url_joins_pool():
    registry = SiteRegistry(sites=[SITE_A], default_site="https://custom.example/")
    assert registry.current_endpoint() == "https://custom.example"
    assert registry.has_site("https://custom.example")


def test_empty_site_list_falls_back_to_builtin_mirrors():
    registry = SiteRegistry(sites=[])
    assert len(registry.all_sites()) > 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
