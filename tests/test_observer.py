"""
test_observer.py — Tests for the observer-side merge and reconnecting client.

Run with:
    pytest tests/test_observer.py -v
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from alerthub.app.alerts.models import Alert, AlertCategory
from alerthub.app.alerts.observer import LocalAlertSet, ObserverClient

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _alert(alert_id: str = "ALR-A", minutes: int = 0) -> Alert:
    created = T0 + timedelta(minutes=minutes)
    return Alert(
        id=alert_id,
        category=AlertCategory.FIRE,
        description="Kitchen fire",
        created_at=created,
        expires_at=created + timedelta(days=7),
    )


class _FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, frames, client: ObserverClient):
        self.frames = frames
        self.client = client
        self.sent = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame
        await self.client.stop()


class TestLocalAlertSet:

    def test_merge_keeps_highest_version(self):
        view = LocalAlertSet()
        active = _alert()
        resolved = active.resolved(T0, 2)

        assert view.merge(resolved)
        assert view.merge(active) is False
        assert view.merge(resolved) is False
        assert view.get("ALR-A").version == 2

    def test_apply_snapshot_and_live_events(self):
        view = LocalAlertSet()
        a, b = _alert("ALR-A"), _alert("ALR-B", minutes=1)
        assert view.apply({"kind": "snapshot", "alerts": [a.to_dict()]}) == 1
        assert view.apply({"kind": "created", "alert": b.to_dict()}) == 1
        assert view.apply({"kind": "resolved", "alert": a.resolved(T0, 2).to_dict()}) == 1

        assert [x.id for x in view.active()] == ["ALR-B"]
        assert [x.id for x in view.all()] == ["ALR-B", "ALR-A"]
        assert view.last_versions() == {"ALR-A": 2, "ALR-B": 1}

    def test_unknown_kind_ignored(self):
        view = LocalAlertSet()
        assert view.apply({"kind": "heartbeat"}) == 0
        assert len(view) == 0

    def test_prune_expired(self):
        view = LocalAlertSet()
        view.merge(_alert("ALR-OLD"))
        view.merge(_alert("ALR-NEW", minutes=60))
        assert view.prune_expired(T0 + timedelta(days=7)) == 1
        assert "ALR-OLD" not in view
        assert "ALR-NEW" in view


class TestObserverClient:

    def test_hello_carries_retained_versions(self):
        client = ObserverClient("ws://example.invalid/ws/alerts")
        client.alerts.merge(_alert().resolved(T0, 2))
        assert client.hello() == {"lastVersions": {"ALR-A": 2}}

    def test_handle_message_notifies_on_change(self):
        on_change = MagicMock()
        client = ObserverClient("ws://example.invalid/ws/alerts", on_change=on_change)
        frame = json.dumps({"kind": "created", "alert": _alert().to_dict()})

        assert client.handle_message(frame) == 1
        assert client.handle_message(frame) == 0
        on_change.assert_called_once_with(client.alerts)

    def test_non_json_frame_counted(self):
        client = ObserverClient("ws://example.invalid/ws/alerts")
        assert client.handle_message("not json") == 0
        assert client.errors == 1

    async def test_run_sends_hello_then_merges(self):
        client = ObserverClient("ws://example.invalid/ws/alerts", reconnect_delay=0, clock=lambda: T0)
        client.alerts.merge(_alert("ALR-A"))
        frames = [
            json.dumps({"kind": "snapshot", "alerts": [_alert("ALR-A").resolved(T0, 2).to_dict()]}),
            json.dumps({"kind": "created", "alert": _alert("ALR-B", minutes=5).to_dict()}),
        ]
        socket = _FakeSocket(frames, client)

        with patch("alerthub.app.alerts.observer.websockets.connect", return_value=socket):
            await client.run()

        assert socket.sent == [{"lastVersions": {"ALR-A": 1}}]
        assert client.connections == 1
        assert client.alerts.last_versions() == {"ALR-A": 2, "ALR-B": 1}
        assert not client.is_running

    async def test_reconnect_drops_expired_before_hello(self):
        client = ObserverClient(
            "ws://example.invalid/ws/alerts",
            reconnect_delay=0,
            clock=lambda: T0 + timedelta(days=7),
        )
        client.alerts.merge(_alert("ALR-OLD"))
        client.alerts.merge(_alert("ALR-NEW", minutes=60))
        socket = _FakeSocket([], client)

        with patch("alerthub.app.alerts.observer.websockets.connect", return_value=socket):
            await client.run()

        assert socket.sent == [{"lastVersions": {"ALR-NEW": 1}}]
        assert "ALR-OLD" not in client.alerts
