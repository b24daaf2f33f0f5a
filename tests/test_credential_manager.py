"""Credential rotation, exhaustion classification, disablement and monthly reset."""

from collections import Counter
from datetime import datetime

import pytest
import pytz

from gateway_bridge.credential_manager import (
    CredentialManager,
    credential_digest,
    format_reset_time,
    next_reset_time,
    parse_credentials,
)
from gateway_bridge.credential_store import InMemoryCredentialStore
from gateway_bridge.exceptions import TimeoutError as ProxyTimeoutError
from gateway_bridge.exceptions import UpstreamError
from gateway_bridge.models import StreamError

from tests.conftest import FailingStore


def _utc(year, month, day, hour=0):
    return pytz.utc.localize(datetime(year, month, day, hour))


class TestParseCredentials:
    def test_mixed_delimiters_and_whitespace(self):
        assert parse_credentials(" a , b;c\n\nd ") == ["a", "b", "c", "d"]

    def test_duplicates_removed_in_order(self):
        assert parse_credentials("a,b,a") == ["a", "b"]

    def test_legacy_value_appended_once(self):
        assert parse_credentials("a,b", "c") == ["a", "b", "c"]
        assert parse_credentials("a,b", "a") == ["a", "b"]
        assert parse_credentials("", "solo") == ["solo"]

    def test_nothing_configured(self):
        assert parse_credentials(None, None) == []


class TestNextReset:
    @pytest.mark.parametrize(
        "now, expected",
        [
            (_utc(2025, 1, 10, 9), _utc(2025, 1, 15)),
            (_utc(2025, 1, 15, 0), _utc(2025, 2, 15)),
            (_utc(2025, 1, 20, 9), _utc(2025, 2, 15)),
            (_utc(2025, 12, 31, 23), _utc(2026, 1, 15)),
        ],
    )
    def test_boundaries(self, now, expected):
        assert next_reset_time(now) == expected

    def test_iso_format(self):
        assert format_reset_time(_utc(2025, 2, 15)) == "2025-02-15T00:00:00.000Z"


class TestRotation:
    def test_three_credentials_six_calls(self, make_manager):
        manager = make_manager(["a", "b", "c"])
        firsts = [manager.get_candidates()[0] for _ in range(6)]

        assert Counter(firsts) == {"a": 2, "b": 2, "c": 2}
        assert all(prev != cur for prev, cur in zip(firsts, firsts[1:]))

    def test_candidates_wrap_around(self, make_manager):
        manager = make_manager(["a", "b", "c"])
        assert manager.get_candidates() == ["a", "b", "c"]
        assert manager.get_candidates() == ["b", "c", "a"]
        assert manager.get_candidates() == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_locally_disabled_credentials_are_skipped(self, make_manager):
        manager = make_manager(["a", "b", "c"])
        await manager.mark_exhausted("b", "billing")
        assert manager.get_candidates() == ["a", "c"]
        assert manager.get_candidates() == ["c", "a"]

    @pytest.mark.asyncio
    async def test_all_disabled_gives_empty_list(self, make_manager):
        manager = make_manager(["a"])
        await manager.mark_exhausted("a", "billing")
        assert manager.get_candidates() == []

    def test_no_credentials(self, make_manager):
        assert make_manager([]).get_candidates() == []


class TestClassification:
    @pytest.mark.parametrize(
        "error",
        [
            UpstreamError("Insufficient credit remaining"),
            UpstreamError("Your BILLING details are missing"),
            UpstreamError("spending limit reached", status_code=402),
            UpstreamError("request rejected", upstream_type="insufficient_quota"),
            StreamError(message="payment required"),
            RuntimeError("account balance too low"),
        ],
    )
    def test_exhaustion_errors(self, manager, error):
        assert manager.is_quota_error(error)

    @pytest.mark.parametrize(
        "error",
        [
            UpstreamError("messages.0.content: field required", status_code=400),
            UpstreamError("Internal server error", status_code=500),
            ProxyTimeoutError(),
            ValueError("bad tool schema"),
        ],
    )
    def test_other_errors(self, manager, error):
        assert not manager.is_quota_error(error)

    def test_keywords_are_configurable(self, make_manager):
        manager = make_manager(quota_keywords=["out of juice"])
        assert manager.is_quota_error(UpstreamError("Out of juice"))
        assert not manager.is_quota_error(UpstreamError("billing"))


class TestDisablementAndReset:
    @pytest.mark.asyncio
    async def test_mark_exhausted_writes_shared_record(self, make_manager, store, clock):
        manager = make_manager(["key-one"])
        await manager.mark_exhausted("key-one", "insufficient credit")

        record = await store.get_record(f"disabled_key:{credential_digest('key-one')}")
        assert record == {
            "disabled_at": int(clock().timestamp() * 1000),
            "reason": "insufficient credit",
            "reset_month": 1,
        }

    @pytest.mark.asyncio
    async def test_record_has_ttl(self, make_manager):
        now = [0.0]
        store = InMemoryCredentialStore(clock=lambda: now[0])
        manager = make_manager(["key-one"], store=store, ttl_days=35)
        await manager.mark_exhausted("key-one", "billing")

        key = manager.storage_key("key-one")
        now[0] = 35 * 86400 - 1
        assert await store.get_record(key) is not None
        now[0] = 35 * 86400
        assert await store.get_record(key) is None

    @pytest.mark.asyncio
    async def test_reset_across_month_boundary(self, make_manager, clock):
        manager = make_manager(["key-one"])
        clock.set(2025, 1, 20)
        await manager.mark_exhausted("key-one", "billing")

        clock.set(2025, 1, 28)
        assert (await manager.get_status("key-one")).available is False

        clock.set(2025, 2, 10)
        status = await manager.get_status("key-one")
        assert status.available is False
        assert status.reset_month == 1
        assert status.reason == "billing"

        clock.set(2025, 2, 15)
        assert (await manager.get_status("key-one")).available is True
        assert manager.get_candidates() == ["key-one"]

        # the record was deleted on the previous read
        clock.set(2025, 2, 1)
        assert (await manager.get_status("key-one")).available is True

    @pytest.mark.asyncio
    async def test_disabled_after_reset_day_stays_disabled_that_month(self, make_manager, clock):
        manager = make_manager(["key-one"])
        clock.set(2025, 3, 16)
        await manager.mark_exhausted("key-one", "quota")
        clock.set(2025, 3, 31)
        assert (await manager.get_status("key-one")).available is False

    @pytest.mark.asyncio
    async def test_status_read_adopts_remote_disablement(self, store, clock):
        writer = CredentialManager(["shared"], store, clock=clock)
        reader = CredentialManager(["shared", "other"], store, clock=clock)
        await writer.mark_exhausted("shared", "billing")

        assert reader.get_candidates() == ["shared", "other"]
        assert (await reader.get_status("shared")).available is False
        assert reader.get_candidates() == ["other"]

    @pytest.mark.asyncio
    async def test_record_deleted_by_another_instance_restores_locally(self, store, clock):
        first = CredentialManager(["shared", "other"], store, clock=clock)
        second = CredentialManager(["shared", "other"], store, clock=clock)
        clock.set(2025, 1, 20)
        await first.mark_exhausted("shared", "billing")
        await second.mark_exhausted("shared", "billing")
        assert second.get_candidates() == ["other"]

        clock.set(2025, 2, 16)
        assert (await first.get_status("shared")).available is True
        assert await store.get_record(first.storage_key("shared")) is None

        assert (await second.get_status("shared")).available is True
        assert "shared" in second.get_candidates()
        assert "shared" in second.get_candidates()
        assert second.get_stats()["disabled_credentials"] == 0

    @pytest.mark.asyncio
    async def test_expired_record_restores_locally(self, make_manager):
        now = [0.0]
        store = InMemoryCredentialStore(clock=lambda: now[0])
        manager = make_manager(["key-one"], store=store, ttl_days=35)
        await manager.mark_exhausted("key-one", "billing")
        assert manager.get_candidates() == []

        now[0] = 36 * 86400
        assert (await manager.get_status("key-one")).available is True
        assert manager.get_candidates() == ["key-one"]

    @pytest.mark.asyncio
    async def test_status_masks_credential(self, make_manager):
        manager = make_manager(["sk-secret-value-1234"])
        status = await manager.get_status("sk-secret-value-1234")
        assert status.credential == "********1234"
        assert status.available is True


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_write_failure_still_disables_locally(self, make_manager):
        manager = make_manager(["a", "b"], store=FailingStore())
        await manager.mark_exhausted("a", "billing")
        assert manager.get_candidates() == ["b"]

    @pytest.mark.asyncio
    async def test_read_failure_means_available(self, make_manager):
        manager = make_manager(["a"], store=FailingStore())
        status = await manager.get_status("a")
        assert status.available is True


class TestStats:
    @pytest.mark.asyncio
    async def test_counts(self, make_manager):
        manager = make_manager(["a", "b", "c"])
        await manager.mark_exhausted("c", "billing")
        manager.get_candidates()
        assert manager.get_stats() == {
            "total_credentials": 3,
            "active_credentials": 2,
            "disabled_credentials": 1,
            "current_index": 1,
        }
