"""Tests for the quota governor: admission against the reserve, caching and header observation."""

from datetime import UTC, datetime, timedelta

import pytest

from secretsync.errors import QuotaExhaustedError
from secretsync.services.quota_service import (
    QuotaGovernor,
    QuotaStatus,
    parse_rate_limit_headers,
)

from conftest import FAST_RETRY


class TestQuotaStatus:
    def test_percentage_remaining(self):
        status = QuotaStatus("acme", "core", 1250, 5000, datetime.now(UTC))
        assert status.percentage_remaining == 25.0

    def test_percentage_with_zero_limit(self):
        status = QuotaStatus("acme", "core", 0, 0, datetime.now(UTC))
        assert status.percentage_remaining == 0.0

    def test_minutes_until_reset_rounds_up(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        status = QuotaStatus("acme", "core", 0, 5000, now + timedelta(minutes=4, seconds=1))
        assert status.minutes_until_reset(now) == 5

    def test_minutes_until_reset_never_negative(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        status = QuotaStatus("acme", "core", 0, 5000, now - timedelta(minutes=3))
        assert status.minutes_until_reset(now) == 0


class TestParseHeaders:
    def test_parses_complete_headers(self):
        parsed = parse_rate_limit_headers(
            {
                "x-ratelimit-remaining": "4321",
                "x-ratelimit-limit": "5000",
                "x-ratelimit-reset": "1700000000",
                "x-ratelimit-resource": "core",
            }
        )
        assert parsed == ("core", 4321, 5000, datetime.fromtimestamp(1700000000, UTC))

    def test_resource_defaults_to_core(self):
        parsed = parse_rate_limit_headers(
            {"x-ratelimit-remaining": "1", "x-ratelimit-limit": "2", "x-ratelimit-reset": "3"}
        )
        assert parsed[0] == "core"

    def test_missing_or_malformed_headers(self):
        assert parse_rate_limit_headers({}) is None
        assert (
            parse_rate_limit_headers(
                {"x-ratelimit-remaining": "lots", "x-ratelimit-limit": "5000", "x-ratelimit-reset": "1"}
            )
            is None
        )


class TestBlockIfInsufficient:
    async def test_refuses_when_required_eats_into_reserve(self, ctx, github, quota):
        github.remaining = 150
        with pytest.raises(QuotaExhaustedError) as exc_info:
            await quota.block_if_insufficient(ctx, "secrets", required=60)
        err = exc_info.value
        assert err.account == "acme"
        assert err.category == "secrets"
        assert err.remaining == 150
        assert err.limit == 5000
        assert 0 <= err.minutes_until_reset <= 30
        assert "Resets in" in str(err)

    async def test_admits_when_headroom_covers_required(self, ctx, github, quota):
        github.remaining = 200
        status = await quota.block_if_insufficient(ctx, "secrets", required=60)
        assert status.remaining == 200

    @pytest.mark.parametrize("remaining", [100, 60, 0])
    async def test_refuses_at_or_below_reserve(self, ctx, github, quota, remaining):
        github.remaining = remaining
        with pytest.raises(QuotaExhaustedError):
            await quota.block_if_insufficient(ctx, "core")

    async def test_reserve_boundary(self, ctx, github, quota):
        github.remaining = 101
        await quota.block_if_insufficient(ctx, "core", required=1)
        github.remaining = 100
        with pytest.raises(QuotaExhaustedError):
            await quota.block_if_insufficient(ctx, "core", required=1)

    async def test_custom_reserve(self, ctx, github, store):
        governor = QuotaGovernor(store, reserve_threshold=10, retry_policy=FAST_RETRY)
        github.remaining = 60
        await governor.block_if_insufficient(ctx, "core")

    async def test_refusal_still_persists_snapshot(self, ctx, github, quota, store):
        github.remaining = 50
        with pytest.raises(QuotaExhaustedError):
            await quota.block_if_insufficient(ctx, "core")
        assert store.quotas[("acme", "core")].remaining == 50

    async def test_unknown_category(self, ctx, quota):
        with pytest.raises(ValueError, match="Unknown quota category"):
            await quota.block_if_insufficient(ctx, "search")


class TestCachedQuota:
    async def test_cached_quota_does_not_call_github(self, ctx, github, quota):
        github.remaining = 4000
        await quota.check_quota(ctx, "secrets")
        github.calls.clear()

        cached = await quota.get_cached_quota("acme", "secrets")

        assert cached.remaining == 4000
        assert github.calls == []

    async def test_cached_quota_missing(self, quota):
        assert await quota.get_cached_quota("nobody", "core") is None

    async def test_check_quota_records_checked_at(self, ctx, store):
        fixed = datetime(2026, 3, 1, tzinfo=UTC)
        governor = QuotaGovernor(store, retry_policy=FAST_RETRY, clock=lambda: fixed)
        await governor.check_quota(ctx, "graphql")
        assert store.quotas[("acme", "graphql")].last_checked_at == fixed


class TestRecordObserved:
    async def test_core_headers_update_core_and_secrets(self, quota, store):
        await quota.record_observed(
            "acme",
            {"x-ratelimit-remaining": "4999", "x-ratelimit-limit": "5000", "x-ratelimit-reset": "1"},
        )
        assert store.quotas[("acme", "core")].remaining == 4999
        assert store.quotas[("acme", "secrets")].remaining == 4999
        assert ("acme", "graphql") not in store.quotas

    async def test_graphql_headers_update_graphql_only(self, quota, store):
        await quota.record_observed(
            "acme",
            {
                "x-ratelimit-remaining": "10",
                "x-ratelimit-limit": "5000",
                "x-ratelimit-reset": "1",
                "x-ratelimit-resource": "graphql",
            },
        )
        assert list(store.quotas) == [("acme", "graphql")]

    async def test_headers_without_counters_are_ignored(self, quota, store):
        await quota.record_observed("acme", {"content-type": "application/json"})
        assert store.quotas == {}

    async def test_observer_for_binds_account(self, quota, store):
        observe = quota.observer_for("octo-org")
        await observe({"x-ratelimit-remaining": "7", "x-ratelimit-limit": "5000", "x-ratelimit-reset": "1"})
        assert store.quotas[("octo-org", "core")].remaining == 7
