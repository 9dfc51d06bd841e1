import pytest

from ssoidp.config import Settings
from ssoidp.service.errors import CsrfError, RateLimitError
from ssoidp.service.security import CsrfProtector, RateLimiter, client_ip

SECRET = "x" * 40


def _settings(tmp_path, **overrides):
    values = dict(
        server_secret=SECRET,
        shared_fs_root=str(tmp_path),
        rate_limit_strict_limit=3,
        rate_limit_strict_window_seconds=900,
    )
    values.update(overrides)
    return Settings(**values)


class TestRateLimiter:
    async def test_strict_tier_blocks_after_limit(self, tmp_path, audit):
        limiter = RateLimiter(None, _settings(tmp_path), audit)

        for expected in (2, 1, 0):
            assert await limiter.hit("strict", "10.0.0.1") == expected

        with pytest.raises(RateLimitError) as excinfo:
            await limiter.hit("strict", "10.0.0.1", user_agent="curl")

        assert excinfo.value.retry_after >= 1
        assert excinfo.value.detail["retryAfter"] == excinfo.value.retry_after
        entry = audit.query(action="security.rate_limited")[0]
        assert entry.ip == "10.0.0.1"
        assert entry.user_agent == "curl"

    async def test_buckets_are_per_subject_and_tier(self, tmp_path):
        limiter = RateLimiter(None, _settings(tmp_path))
        for _ in range(3):
            await limiter.hit("strict", "10.0.0.1")

        assert await limiter.hit("strict", "10.0.0.2") == 2
        assert await limiter.hit("general", "10.0.0.1") == 99

    async def test_reset_restores_allowance(self, tmp_path):
        limiter = RateLimiter(None, _settings(tmp_path))
        for _ in range(3):
            await limiter.hit("strict", "10.0.0.1")

        await limiter.reset("strict", "10.0.0.1")

        assert await limiter.hit("strict", "10.0.0.1") == 2

    async def test_bypass_only_outside_production(self, tmp_path):
        dev = RateLimiter(None, _settings(tmp_path, rate_limit_bypass=True))
        prod = RateLimiter(
            None, _settings(tmp_path, rate_limit_bypass=True, environment="production")
        )
        for _ in range(5):
            await dev.hit("strict", "ip")

        assert prod.bypass is False
        for _ in range(3):
            await prod.hit("strict", "ip")
        with pytest.raises(RateLimitError):
            await prod.hit("strict", "ip")


class TestCsrfProtector:
    def test_safe_methods_skip_validation(self):
        CsrfProtector(SECRET).validate("GET", None, None)

    def test_matching_signed_token_passes(self):
        protector = CsrfProtector(SECRET)
        token = protector.issue()

        protector.validate("POST", token, token)

    @pytest.mark.parametrize("cookie, header", [(None, "t"), ("t", None), (None, None)])
    def test_missing_token(self, cookie, header):
        with pytest.raises(CsrfError):
            CsrfProtector(SECRET).validate("POST", cookie, header)

    def test_mismatch(self):
        protector = CsrfProtector(SECRET)

        with pytest.raises(CsrfError):
            protector.validate("DELETE", protector.issue(), protector.issue())

    def test_planted_unsigned_token_is_rejected(self):
        with pytest.raises(CsrfError):
            CsrfProtector(SECRET).validate("POST", "a.1.b", "a.1.b")

    @pytest.mark.parametrize(
        "cookie, header", [("a.1.\u00e9", "a.1.\u00e9"), ("a.1.b", "a.1.\u00e9"), ("\u00e9", "a.1.b")]
    )
    def test_non_ascii_token_is_rejected(self, cookie, header):
        with pytest.raises(CsrfError):
            CsrfProtector(SECRET).validate("POST", cookie, header)

    def test_token_from_other_secret_is_rejected(self):
        token = CsrfProtector("y" * 40).issue()

        with pytest.raises(CsrfError):
            CsrfProtector(SECRET).validate("POST", token, token)

    def test_expired_token(self):
        now = [1_000_000.0]
        protector = CsrfProtector(SECRET, ttl_seconds=60, clock=lambda: now[0])
        token = protector.issue()
        now[0] += 61

        assert not protector.is_valid_token(token)


class TestClientIp:
    def test_untrusted_peer_ignores_forwarded_header(self):
        assert client_ip("203.0.113.9", "1.2.3.4", ["10.0.0.0/8"]) == "203.0.113.9"

    def test_no_trusted_proxies_configured(self):
        assert client_ip("10.0.0.5", "1.2.3.4", []) == "10.0.0.5"

    def test_trusted_peer_uses_rightmost_untrusted_hop(self):
        forwarded = "6.6.6.6, 198.51.100.7, 10.0.0.3"

        assert client_ip("10.0.0.2", forwarded, ["10.0.0.0/8"]) == "198.51.100.7"

    def test_all_hops_trusted_falls_back_to_first(self):
        assert client_ip("10.0.0.2", "10.0.0.9, 10.0.0.3", ["10.0.0.0/8"]) == "10.0.0.9"

    def test_missing_peer(self):
        assert client_ip(None, None, []) == "unknown"

    def test_invalid_cidr_is_ignored(self):
        assert client_ip("10.0.0.2", "1.2.3.4", ["not-a-cidr"]) == "10.0.0.2"
