"""Tests for the multi-rule sliding-window rate limiter."""

from unittest.mock import MagicMock, patch

import pytest

from sessionward.service.rate_limit import (
    InMemoryCounterStore,
    RateLimiter,
    RateLimitRule,
    RequestInfo,
    default_rules,
)
from sessionward.storage.redis_cache import RedisCounterStore


class FakeClock:
    def __init__(self, start=1_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def ip_rule(limit=2, window=60, name="by_ip"):
    return RateLimitRule(name, lambda r: r.ip, limit, window)


def login(ip="10.0.0.1", email=None):
    return RequestInfo(method="POST", path="/v1/sessions/login", ip=ip, email=email)


@pytest.fixture
def clock():
    return FakeClock()


class TestSlidingWindow:
    def test_limit_plus_one_is_rejected(self, settings, clock):
        limiter = RateLimiter(settings, rules=[ip_rule(limit=2)], clock=clock)
        assert limiter.check(login()).allowed
        assert limiter.check(login()).allowed
        decision = limiter.check(login())
        assert not decision.allowed
        assert decision.status_code == 429
        assert decision.body() == {"error": settings.rate_limit_response_message}
        assert decision.headers() == {"Retry-After": "60"}
        assert decision.rule.name == "by_ip"

    def test_window_slides(self, settings, clock):
        limiter = RateLimiter(settings, rules=[ip_rule(limit=1, window=60)], clock=clock)
        assert limiter.check(login()).allowed
        clock.advance(59)
        assert not limiter.check(login()).allowed
        # Rejected hits stay in the window too
        clock.advance(1)
        assert not limiter.check(login()).allowed
        clock.advance(61)
        assert limiter.check(login()).allowed

    def test_keys_are_isolated(self, settings, clock):
        limiter = RateLimiter(settings, rules=[ip_rule(limit=1)], clock=clock)
        assert limiter.check(login(ip="1.1.1.1")).allowed
        assert not limiter.check(login(ip="1.1.1.1")).allowed
        assert limiter.check(login(ip="2.2.2.2")).allowed

    def test_rule_without_key_does_not_apply(self, settings, clock):
        rule = RateLimitRule("by_email", lambda r: r.email, 1, 60)
        limiter = RateLimiter(settings, rules=[rule], clock=clock)
        for _ in range(5):
            decision = limiter.check(login(email=None))
            assert decision.allowed
            assert decision.counts == {}

    def test_every_applicable_counter_advances(self, settings, clock):
        tight = ip_rule(limit=1, name="tight")
        loose = ip_rule(limit=10, name="loose")
        limiter = RateLimiter(settings, rules=[tight, loose], clock=clock)
        limiter.check(login())
        decision = limiter.check(login())
        assert not decision.allowed
        assert decision.rule.name == "tight"
        assert decision.counts == {"tight": 2, "loose": 2}

    def test_first_tripped_rule_wins(self, settings, clock):
        first = ip_rule(limit=1, window=30, name="first")
        second = ip_rule(limit=1, window=90, name="second")
        limiter = RateLimiter(settings, rules=[first, second], clock=clock)
        limiter.check(login())
        decision = limiter.check(login())
        assert decision.rule.name == "first"
        assert decision.retry_after == 30

    def test_disabled_limiter_allows_everything(self, settings, clock):
        limiter = RateLimiter(
            settings.apply(rate_limiting_enabled=False), rules=[ip_rule(limit=1)], clock=clock
        )
        for _ in range(5):
            assert limiter.check(login()).allowed

    def test_custom_status_and_message(self, settings, clock):
        custom = settings.apply(
            rate_limit_response_status=503, rate_limit_response_message="Slow down"
        )
        limiter = RateLimiter(custom, rules=[ip_rule(limit=1)], clock=clock)
        limiter.check(login())
        decision = limiter.check(login())
        assert decision.status_code == 503
        assert decision.body() == {"error": "Slow down"}

    def test_rejection_is_logged(self, settings, clock):
        limiter = RateLimiter(settings, rules=[ip_rule(limit=1)], clock=clock)
        with patch("sessionward.service.rate_limit.logger") as mock_logger:
            limiter.check(login())
            limiter.check(login())
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_exceeded"
        assert mock_logger.warning.call_args[1]["rule"] == "by_ip"


class TestDefaultRules:
    def test_rule_names_and_limits(self, settings):
        rules = {rule.name: rule for rule in default_rules(settings)}
        assert set(rules) == {
            "logins/ip",
            "logins/email",
            "password_resets/ip",
            "password_resets/email",
        }
        assert rules["logins/ip"].limit == settings.rate_limit_requests_per_minute
        assert rules["logins/email"].limit == settings.credential_rate_limit_per_minute
        assert all(r.window_seconds == 60 for r in rules.values())

    def test_login_matches_ip_and_email(self, settings):
        limiter = RateLimiter(settings)
        names = {rule.name for rule, _ in limiter.applicable(login(email="A@Example.com"))}
        assert names == {"logins/ip", "logins/email"}

    def test_email_key_is_normalized(self, settings):
        limiter = RateLimiter(settings)
        keys = dict(
            (rule.name, key) for rule, key in limiter.applicable(login(email="  A@Example.com "))
        )
        assert keys["logins/email"] == "a@example.com"

    def test_password_forgot_matches_reset_rules(self, settings):
        limiter = RateLimiter(settings)
        request = RequestInfo("POST", "/v1/password/forgot", ip="1.1.1.1", email="x@example.com")
        names = {rule.name for rule, _ in limiter.applicable(request)}
        assert names == {"password_resets/ip", "password_resets/email"}

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/v1/sessions/login"),
            ("PUT", "/v1/sessions/refresh"),
            ("POST", "/v1/sessions/refresh"),
            ("PUT", "/v1/password/reset"),
            ("GET", "/v1/sessions"),
        ],
    )
    def test_other_requests_are_not_throttled(self, settings, method, path):
        limiter = RateLimiter(settings)
        assert limiter.applicable(RequestInfo(method, path, ip="1.1.1.1", email="x@y.z")) == []

    def test_email_throttle_trips_across_ips(self, settings, clock):
        limiter = RateLimiter(settings, clock=clock)
        limit = settings.credential_rate_limit_per_minute
        for index in range(limit):
            assert limiter.check(login(ip=f"10.0.0.{index}", email="victim@example.com")).allowed
        decision = limiter.check(login(ip="10.0.0.99", email="victim@example.com"))
        assert not decision.allowed
        assert decision.rule.name == "logins/email"

    def test_short_window_hits_do_not_reset_long_window(self, settings, clock):
        hourly = RateLimitRule("hourly", lambda r: r.ip if r.email is None else None, 1, 3600)
        short = RateLimitRule("short", lambda r: r.email, 5, 10)
        limiter = RateLimiter(settings, rules=[hourly, short], clock=clock)

        assert limiter.check(login()).allowed
        clock.advance(20)
        assert limiter.check(login(email="someone@example.com")).allowed
        clock.advance(1)
        decision = limiter.check(login())

        assert not decision.allowed
        assert decision.rule.name == "hourly"
        assert decision.counts == {"hourly": 2}


class TestInMemoryCounterStore:
    def test_counts_within_window(self):
        counters = InMemoryCounterStore()
        assert counters.hit("k", 10, 100.0) == 1
        assert counters.hit("k", 10, 105.0) == 2
        assert counters.hit("k", 10, 110.0) == 2
        assert counters.hit("k", 10, 121.0) == 1

    def test_sweep_drops_idle_keys(self):
        counters = InMemoryCounterStore()
        counters.hit("idle", 10, 100.0)
        counters.hit("busy", 10, 200.0)
        assert "idle" not in counters._hits
        assert "busy" in counters._hits

    def test_sweep_keeps_keys_with_longer_windows(self):
        counters = InMemoryCounterStore()
        counters.hit("hourly", 3600, 1_000.0)
        counters.hit("short", 10, 1_020.0)
        assert "hourly" in counters._hits
        assert counters.hit("hourly", 3600, 1_021.0) == 2

    def test_reset_clears_counts(self):
        counters = InMemoryCounterStore()
        counters.hit("k", 10, 100.0)
        counters.reset()
        assert counters.hit("k", 10, 100.0) == 1


class TestRedisCounterStore:
    def create_store(self, script_result=3):
        with patch("sessionward.storage.redis_cache.Redis") as redis_cls:
            client = MagicMock()
            redis_cls.from_url.return_value = client
            script = MagicMock(return_value=script_result)
            client.register_script.return_value = script
            store = RedisCounterStore("redis://localhost:6379/0")
        return store, client, script

    def test_hit_runs_script_with_hashed_key(self):
        store, _, script = self.create_store(script_result=3)
        count = store.hit("logins/ip:1.1.1.1", 60, 1234.5)
        assert count == 3
        kwargs = script.call_args.kwargs
        (key,) = kwargs["keys"]
        assert key.startswith("rate:")
        assert "1.1.1.1" not in key
        assert kwargs["args"][:2] == [1234.5, 60]
        assert kwargs["args"][2].startswith("1234.500000:")

    def test_members_are_unique_per_hit(self):
        store, _, script = self.create_store()
        store.hit("k", 60, 1.0)
        store.hit("k", 60, 1.0)
        first, second = (c.kwargs["args"][2] for c in script.call_args_list)
        assert first != second

    def test_verify_connection_pings(self):
        store, client, _ = self.create_store()
        store.verify_connection()
        client.ping.assert_called_once()

    def test_limiter_uses_shared_counts(self, settings, clock):
        store, _, _ = self.create_store(script_result=61)
        limiter = RateLimiter(settings, counters=store, clock=clock)
        decision = limiter.check(login())
        assert not decision.allowed
