"""
test_alert_store.py — Tests for the durable alert record and versioning.

Covers:
    • Data models (Alert, AlertEvent, AlertFilter, serialisation)
    • EventSequencer (monotonic versions, per-alert lock lifecycle)
    • AlertStore create / validation
    • Resolve (authorisation first, idempotency, compare-and-set under races)
    • Reads (filters, ordering, retention window)
    • Resync reads (get_since, changed_since)
    • Purge and StoreUnavailable mapping

Run with:
    pytest tests/test_alert_store.py -v
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta, timezone

import pytest

from alerthub.app.alerts.models import (
    Alert,
    AlertCategory,
    AlertEvent,
    AlertFilter,
    AlertStatus,
    EventKind,
    Position,
    generate_alert_id,
)
from alerthub.app.alerts.sequencer import EventSequencer
from alerthub.app.alerts.store import normalise_filter, parse_category
from alerthub.app.core.errors import (
    AuthorizationError,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_alert(
    alert_id: str = "ALR-000000000001",
    category: AlertCategory = AlertCategory.FIRE,
    version: int = 1,
    created_at: datetime = T0,
) -> Alert:
    return Alert(
        id=alert_id,
        category=category,
        description="Smoke from the third floor",
        position=Position(13.0827, 80.2707),
        created_at=created_at,
        expires_at=created_at + timedelta(days=7),
        version=version,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Data Model Tests
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertModel:

    def test_generated_id_format(self):
        a, b = generate_alert_id(), generate_alert_id()
        assert a != b
        assert a.startswith("ALR-")
        assert len(a) == 16

    def test_to_dict_round_trip_preserves_fields(self):
        alert = _make_alert().resolved(T0 + timedelta(hours=1), 2)
        restored = Alert.from_dict(alert.to_dict())
        assert restored == alert
        assert restored.resolved_at.tzinfo is not None

    def test_unknown_position_serialises_as_null(self):
        alert = Alert(
            id="ALR-X", category=AlertCategory.MEDICAL, description="Collapsed runner",
            created_at=T0, expires_at=T0 + timedelta(days=7),
        )
        d = alert.to_dict()
        assert d["position"] is None
        assert Alert.from_dict(d).position is None

    def test_resolved_copy_leaves_original_untouched(self):
        alert = _make_alert()
        resolved = alert.resolved(T0, 2)
        assert alert.status is AlertStatus.ACTIVE
        assert resolved.is_resolved
        assert resolved.version == 2
        assert resolved.created_at == alert.created_at

    def test_expiry_boundary_is_inclusive(self):
        alert = _make_alert()
        assert not alert.is_expired(T0 + timedelta(days=7) - timedelta(seconds=1))
        assert alert.is_expired(T0 + timedelta(days=7))


class TestAlertEvent:

    def test_for_alert_picks_kind_from_status(self):
        alert = _make_alert()
        assert AlertEvent.for_alert(alert).kind is EventKind.CREATED
        assert AlertEvent.for_alert(alert.resolved(T0, 2)).kind is EventKind.RESOLVED

    def test_wire_shape(self):
        event = AlertEvent(EventKind.CREATED, _make_alert())
        d = event.to_dict()
        assert set(d) == {"kind", "alert"}
        assert d["kind"] == "created"
        assert d["alert"]["version"] == 1
        assert event.alert_id == "ALR-000000000001"
        assert event.version == 1


class TestAlertFilter:

    def test_empty_filter_matches_everything(self):
        assert AlertFilter().matches(_make_alert())

    def test_bounds_are_inclusive(self):
        f = AlertFilter(from_time=T0, to_time=T0)
        assert f.matches(_make_alert(created_at=T0))
        assert not f.matches(_make_alert(created_at=T0 + timedelta(seconds=1)))

    def test_category_mismatch(self):
        assert not AlertFilter(category=AlertCategory.FLOOD).matches(_make_alert())

    def test_normalise_rejects_inverted_window(self):
        with pytest.raises(ValidationError):
            normalise_filter(AlertFilter(from_time=T0, to_time=T0 - timedelta(hours=1)))

    def test_normalise_treats_naive_as_utc(self):
        f = normalise_filter(AlertFilter(from_time=datetime(2026, 3, 1, 12, 0)))
        assert f.from_time == T0


class TestParseCategory:

    @pytest.mark.parametrize("raw", ["fire", "FIRE", " Fire "])
    def test_accepts_case_and_whitespace(self, raw):
        assert parse_category(raw) is AlertCategory.FIRE

    def test_rejects_unknown(self):
        with pytest.raises(ValidationError) as exc:
            parse_category("tornado")
        assert exc.value.details["field"] == "category"


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Sequencer
# ═══════════════════════════════════════════════════════════════════════════

class TestEventSequencer:

    def test_first_version_is_one(self):
        assert EventSequencer().next_version("A") == 1

    def test_versions_only_advance_on_confirm(self):
        seq = EventSequencer()
        assert seq.next_version("A") == 1
        assert seq.next_version("A") == 1
        seq.confirm("A", 1)
        assert seq.next_version("A") == 2

    def test_next_version_exceeds_store_read(self):
        seq = EventSequencer()
        assert seq.next_version("A", current=4) == 5

    def test_confirm_never_goes_backwards(self):
        seq = EventSequencer()
        seq.confirm("A", 3)
        seq.confirm("A", 2)
        assert seq.last_committed("A") == 3

    def test_negative_current_rejected(self):
        with pytest.raises(ValueError):
            EventSequencer().next_version("A", current=-1)

    def test_ids_are_independent(self):
        seq = EventSequencer()
        seq.confirm("A", 2)
        assert seq.next_version("B") == 1

    def test_forget(self):
        seq = EventSequencer()
        seq.confirm("A", 2)
        seq.forget("A")
        assert seq.last_committed("A") == 0

    async def test_serialize_orders_same_id(self):
        seq = EventSequencer()
        order = []

        async def worker(tag: str):
            async with seq.serialize("A"):
                order.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-out")

        await asyncio.gather(worker("one"), worker("two"))
        assert order in (
            ["one-in", "one-out", "two-in", "two-out"],
            ["two-in", "two-out", "one-in", "one-out"],
        )

    async def test_serialize_does_not_block_other_ids(self):
        seq = EventSequencer()
        async with seq.serialize("A"):
            await asyncio.wait_for(self._enter(seq, "B"), timeout=1.0)

    @staticmethod
    async def _enter(seq: EventSequencer, alert_id: str):
        async with seq.serialize(alert_id):
            pass

    async def test_idle_locks_are_dropped(self):
        seq = EventSequencer()
        async with seq.serialize("A"):
            assert seq.stats()["active_locks"] == 1
        assert seq.stats()["active_locks"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Create
# ═══════════════════════════════════════════════════════════════════════════

class TestStoreCreate:

    async def test_create_returns_active_version_one(self, store, clock):
        alert = await store.create("flood", "Water over the bridge", (13.08, 80.27))
        assert alert.status is AlertStatus.ACTIVE
        assert alert.version == 1
        assert alert.created_at == clock.now
        assert alert.expires_at == clock.now + timedelta(days=7)
        assert alert.position == Position(13.08, 80.27)

    async def test_created_alert_is_readable(self, store):
        alert = await store.create(AlertCategory.FIRE, "Kitchen fire")
        assert await store.get(alert.id) == alert

    async def test_description_is_trimmed(self, store):
        alert = await store.create("fire", "  Kitchen fire  ")
        assert alert.description == "Kitchen fire"

    async def test_position_from_mapping(self, store):
        alert = await store.create("medical", "Fall", {"latitude": -33.9, "longitude": 151.2})
        fetched = await store.get(alert.id)
        assert fetched.position == Position(-33.9, 151.2)

    async def test_missing_position_stays_unknown(self, store):
        alert = await store.create("violence", "Fight outside the bar")
        assert (await store.get(alert.id)).position is None

    @pytest.mark.parametrize("description", ["", "   ", None])
    async def test_empty_description_rejected(self, store, description):
        with pytest.raises(ValidationError):
            await store.create("fire", description)
        assert await store.query() == []

    async def test_unknown_category_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.create("tornado", "Funnel cloud")

    @pytest.mark.parametrize("position", [
        (91.0, 0.0),
        (0.0, -180.5),
        (math.nan, 10.0),
        {"latitude": 10.0},
        ("north", "east"),
    ])
    async def test_bad_position_rejected(self, store, position):
        with pytest.raises(ValidationError):
            await store.create("earthquake", "Shaking", position)

    async def test_position_extremes_accepted(self, store):
        alert = await store.create("earthquake", "Shaking", (-90.0, 180.0))
        assert alert.position == Position(-90.0, 180.0)


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Resolve
# ═══════════════════════════════════════════════════════════════════════════

class TestStoreResolve:

    async def test_resolve_moves_to_version_two(self, store, clock):
        alert = await store.create("fire", "Kitchen fire")
        clock.advance(minutes=5)
        resolved = await store.resolve(alert.id, authorized=True)
        assert resolved.status is AlertStatus.RESOLVED
        assert resolved.version == 2
        assert resolved.resolved_at == clock.now
        assert resolved.created_at == alert.created_at
        assert await store.get(alert.id) == resolved

    async def test_resolve_is_idempotent(self, store, clock):
        alert = await store.create("fire", "Kitchen fire")
        first = await store.resolve(alert.id, authorized=True)
        clock.advance(minutes=5)
        second = await store.resolve(alert.id, authorized=True)
        assert second == first
        assert second.version == 2

    async def test_transition_reports_whether_it_changed(self, store):
        alert = await store.create("fire", "Kitchen fire")
        _, changed = await store.transition_resolved(alert.id)
        assert changed is True
        again, changed = await store.transition_resolved(alert.id)
        assert changed is False
        assert again.version == 2

    async def test_unauthorised_checked_before_existence(self, store):
        with pytest.raises(AuthorizationError):
            await store.resolve("ALR-DOESNOTEXIST", authorized=False)

    async def test_unauthorised_leaves_alert_untouched(self, store):
        alert = await store.create("fire", "Kitchen fire")
        with pytest.raises(AuthorizationError):
            await store.resolve(alert.id, authorized=False)
        assert (await store.get(alert.id)).version == 1

    async def test_unknown_id(self, store):
        with pytest.raises(NotFoundError):
            await store.resolve("ALR-DOESNOTEXIST", authorized=True)

    async def test_expired_alert_cannot_be_resolved(self, store, clock):
        alert = await store.create("fire", "Kitchen fire")
        clock.advance(days=7, seconds=1)
        with pytest.raises(NotFoundError):
            await store.resolve(alert.id, authorized=True)

    async def test_concurrent_resolves_increment_once(self, store):
        alert = await store.create("fire", "Kitchen fire")
        results = await asyncio.gather(
            store.transition_resolved(alert.id),
            store.transition_resolved(alert.id),
            store.transition_resolved(alert.id),
        )
        assert sum(changed for _, changed in results) == 1
        assert {a.version for a, _ in results} == {2}
        assert all(a.is_resolved for a, _ in results)
        assert (await store.get(alert.id)).version == 2


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Reads
# ═══════════════════════════════════════════════════════════════════════════

class TestStoreQuery:

    async def test_newest_first(self, store, clock):
        ids = []
        for i in range(3):
            ids.append((await store.create("fire", f"fire {i}")).id)
            clock.advance(minutes=1)
        result = await store.query()
        assert [a.id for a in result] == list(reversed(ids))

    async def test_category_filter(self, store):
        await store.create("fire", "Kitchen fire")
        flood = await store.create("flood", "Street flooding")
        result = await store.query(AlertFilter(category=AlertCategory.FLOOD))
        assert [a.id for a in result] == [flood.id]

    async def test_time_window_inclusive(self, store, clock):
        early = await store.create("fire", "early")
        clock.advance(hours=1)
        middle = await store.create("fire", "middle")
        clock.advance(hours=1)
        await store.create("fire", "late")

        result = await store.query(AlertFilter(from_time=early.created_at, to_time=middle.created_at))
        assert [a.id for a in result] == [middle.id, early.id]

    async def test_resolved_alerts_still_listed(self, store):
        alert = await store.create("fire", "Kitchen fire")
        await store.resolve(alert.id, authorized=True)
        [listed] = await store.query()
        assert listed.is_resolved

    async def test_inverted_window_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.query(AlertFilter(from_time=T0, to_time=T0 - timedelta(seconds=1)))

    async def test_expired_alerts_hidden_before_purge(self, store, clock):
        old = await store.create("fire", "old")
        clock.advance(days=3)
        fresh = await store.create("fire", "fresh")

        clock.advance(days=4)  # old is now exactly 7 days old
        assert [a.id for a in await store.query()] == [fresh.id]
        with pytest.raises(NotFoundError):
            await store.get(old.id)

    async def test_still_visible_just_before_expiry(self, store, clock):
        alert = await store.create("fire", "Kitchen fire")
        clock.advance(days=7, seconds=-1)
        assert (await store.get(alert.id)).id == alert.id

    async def test_get_unknown(self, store):
        with pytest.raises(NotFoundError) as exc:
            await store.get("ALR-NOPE")
        assert exc.value.details["id"] == "ALR-NOPE"


class TestStoreResyncReads:

    async def test_get_since_zero_is_full_live_set_oldest_first(self, store, clock):
        a = await store.create("fire", "a")
        clock.advance(minutes=1)
        b = await store.create("flood", "b")
        assert [x.id for x in await store.get_since(0)] == [a.id, b.id]

    async def test_get_since_threshold(self, store):
        a = await store.create("fire", "a")
        await store.create("flood", "b")
        await store.resolve(a.id, authorized=True)
        assert [x.id for x in await store.get_since(1)] == [a.id]

    async def test_changed_since_skips_known_versions(self, store, clock):
        a = await store.create("fire", "a")
        clock.advance(minutes=1)
        b = await store.create("flood", "b")
        clock.advance(minutes=1)
        c = await store.create("medical", "c")
        await store.resolve(a.id, authorized=True)

        changed = await store.changed_since({a.id: 1, b.id: 1})
        assert [x.id for x in changed] == [a.id, c.id]
        assert changed[0].version == 2

    async def test_changed_since_empty_map_is_full_snapshot(self, store):
        await store.create("fire", "a")
        assert len(await store.changed_since({})) == 1
        assert len(await store.changed_since(None)) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Maintenance & Failures
# ═══════════════════════════════════════════════════════════════════════════

class TestStorePurge:

    async def test_purge_removes_only_expired(self, store, clock):
        old = await store.create("fire", "old")
        clock.advance(days=6)
        fresh = await store.create("fire", "fresh")
        clock.advance(days=1)

        purged = await store.purge_expired()
        assert purged == [old.id]
        assert [a.id for a in await store.query()] == [fresh.id]

    async def test_purge_nothing(self, store):
        await store.create("fire", "fresh")
        assert await store.purge_expired() == []


class TestStoreUnavailable:

    async def test_create_maps_driver_error(self, down_store, sequencer):
        with pytest.raises(StoreUnavailable) as exc:
            await down_store.create("fire", "Kitchen fire")
        assert exc.value.status_code == 503
        assert exc.value.details["retryable"] is True

    async def test_failed_create_consumes_no_version(self, down_store, sequencer):
        with pytest.raises(StoreUnavailable):
            await down_store.create("fire", "Kitchen fire", alert_id="ALR-FIXED")
        assert sequencer.last_committed("ALR-FIXED") == 0

    async def test_reads_map_driver_error(self, down_store):
        with pytest.raises(StoreUnavailable):
            await down_store.query()
        with pytest.raises(StoreUnavailable):
            await down_store.ping()

    async def test_validation_runs_before_store(self, down_store):
        with pytest.raises(ValidationError):
            await down_store.create("fire", "")
