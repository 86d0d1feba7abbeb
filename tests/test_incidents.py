"""Tests for the incident store and lifecycle."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import make_check
from pulsewatch.db import utcnow
from pulsewatch.errors import NotFoundError
from pulsewatch.health.models import CheckKind
from pulsewatch.incidents.lifecycle import IncidentLifecycle, severity_for_check
from pulsewatch.incidents.models import Incident, IncidentStatus, Severity


class TestSeverityForCheck:
    @pytest.mark.parametrize(
        ("kind", "name", "expected"),
        [
            (CheckKind.SERVER, "host", Severity.CRITICAL),
            (CheckKind.API, "auth api", Severity.HIGH),
            (CheckKind.PROCESS, "Main Database", Severity.CRITICAL),
            (CheckKind.SERVICE, "AUTH service", Severity.CRITICAL),
            (CheckKind.SERVICE, "cron", Severity.HIGH),
        ],
    )
    def test_rules(self, kind, name, expected) -> None:
        assert severity_for_check(make_check(name, kind)) == expected


class TestIncidentStore:
    def test_create_assigns_id(self, incident_store) -> None:
        incident = incident_store.create(Incident(health_check_id="c1", title="down"))
        assert incident.id
        assert incident_store.find_by_id(incident.id).title == "down"

    def test_find_active_for_check_ignores_resolved(self, incident_store) -> None:
        incident = incident_store.create(Incident(health_check_id="c1", title="down"))
        incident_store.update(incident.id, status=IncidentStatus.RESOLVED, resolved_at=utcnow())
        assert incident_store.find_active_for_check("c1") is None

    def test_update_unknown_field(self, incident_store) -> None:
        incident = incident_store.create(Incident(health_check_id="c1", title="down"))
        with pytest.raises(ValueError):
            incident_store.update(incident.id, health_check_id="c2")

    def test_paged_listing_with_filter(self, incident_store) -> None:
        for i in range(3):
            incident_store.create(Incident(health_check_id=f"c{i}", title=f"down {i}"))
        resolved = incident_store.create(Incident(health_check_id="c9", title="old"))
        incident_store.update(resolved.id, status=IncidentStatus.RESOLVED)

        page, total = incident_store.find_all(page=1, limit=2)
        assert total == 4
        assert len(page) == 2
        only_resolved, count = incident_store.find_all(status=IncidentStatus.RESOLVED)
        assert count == 1
        assert only_resolved[0].id == resolved.id

    def test_metrics_mttr(self, incident_store) -> None:
        now = utcnow()
        incident_store.create(Incident(
            health_check_id="c1", title="a", status=IncidentStatus.RESOLVED,
            created_at=now - timedelta(minutes=30), resolved_at=now - timedelta(minutes=20),
        ))
        incident_store.create(Incident(
            health_check_id="c2", title="b", status=IncidentStatus.RESOLVED,
            created_at=now - timedelta(minutes=60), resolved_at=now - timedelta(minutes=30),
        ))
        incident_store.create(Incident(health_check_id="c3", title="c"))

        metrics = incident_store.get_metrics()
        assert metrics.total == 3
        assert metrics.active == 1
        assert metrics.resolved == 2
        assert metrics.mttr == 20.0

    def test_history_counts_per_day(self, incident_store) -> None:
        now = utcnow()
        incident_store.create(Incident(health_check_id="c1", title="a", created_at=now))
        incident_store.create(Incident(health_check_id="c2", title="b", created_at=now))
        incident_store.create(Incident(
            health_check_id="c3", title="c", created_at=now - timedelta(days=2),
        ))
        history = incident_store.get_history(7)
        assert [h["count"] for h in history] == [1, 2]
        assert history[-1]["date"] == now.strftime("%Y-%m-%d")


class TestIncidentLifecycle:
    def test_open_creates_incident(self, lifecycle, check_store, incident_store) -> None:
        check = check_store.create(make_check("Auth DB", CheckKind.PROCESS))
        incident = lifecycle.open_or_append(check, "Port 5432 is not open")

        assert incident.title == "Auth DB is unhealthy"
        assert incident.status == IncidentStatus.INVESTIGATING
        assert incident.severity == Severity.CRITICAL
        events = incident_store.get_events(incident.id)
        assert [e.message for e in events] == ["Incident created: Port 5432 is not open"]

    def test_append_to_active_incident(self, lifecycle, check_store, incident_store) -> None:
        check = check_store.create(make_check("web"))
        first = lifecycle.open_or_append(check, "503")
        second = lifecycle.open_or_append(check, "504")

        assert second.id == first.id
        assert len(incident_store.find_active()) == 1
        messages = [e.message for e in incident_store.get_events(first.id)]
        assert messages == ["Incident created: 503", "Still unhealthy: 504"]

    def test_resolve_stamps_once_and_notifies(self, incident_store, check_store) -> None:
        callback = AsyncMock()
        lifecycle = IncidentLifecycle(incident_store, check_store, on_resolved=callback)
        check = check_store.create(make_check("web"))
        incident = lifecycle.open_or_append(check, "503")

        resolved = asyncio.run(lifecycle.resolve(incident.id))
        assert resolved.status == IncidentStatus.RESOLVED
        first_stamp = resolved.resolved_at
        assert first_stamp is not None
        callback.assert_awaited_once()
        assert callback.await_args.args[1].id == check.id

        again = asyncio.run(lifecycle.resolve(incident.id, "Still fine"))
        assert again.resolved_at == first_stamp
        callback.assert_awaited_once()
        messages = [e.message for e in incident_store.get_events(incident.id)]
        assert messages[-2:] == ["Incident resolved", "Still fine"]

    def test_empty_update_rejected(self, lifecycle, check_store, incident_store) -> None:
        check = check_store.create(make_check("web"))
        incident = lifecycle.open_or_append(check, "503")

        with pytest.raises(ValueError, match="No incident fields"):
            asyncio.run(lifecycle.update(incident.id, status=None, title=None))

        assert incident_store.find_by_id(incident.id).updated_at == incident.updated_at
        assert len(incident_store.get_events(incident.id)) == 1

    def test_new_failure_after_resolve_opens_new_incident(self, lifecycle, check_store) -> None:
        check = check_store.create(make_check("web"))
        first = lifecycle.open_or_append(check, "503")
        asyncio.run(lifecycle.resolve(first.id))
        second = lifecycle.open_or_append(check, "503 again")
        assert second.id != first.id

    def test_update_logs_changes(self, lifecycle, check_store, incident_store) -> None:
        check = check_store.create(make_check("web"))
        incident = lifecycle.open_or_append(check, "503")

        updated = asyncio.run(lifecycle.update(
            incident.id, status="identified", severity=Severity.LOW, title=None,
        ))
        assert updated.status == IncidentStatus.IDENTIFIED
        assert updated.severity == Severity.LOW
        assert updated.resolved_at is None
        last = incident_store.get_events(incident.id)[-1].message
        assert last == "Incident updated: status: identified, severity: low"

    def test_update_to_resolved_notifies(self, incident_store, check_store) -> None:
        callback = AsyncMock()
        lifecycle = IncidentLifecycle(incident_store, check_store, on_resolved=callback)
        incident = lifecycle.open_or_append(check_store.create(make_check("web")), "503")

        updated = asyncio.run(lifecycle.update(incident.id, status=IncidentStatus.RESOLVED))
        assert updated.resolved_at is not None
        callback.assert_awaited_once()

    def test_cannot_reopen(self, lifecycle, check_store) -> None:
        incident = lifecycle.open_or_append(check_store.create(make_check("web")), "503")
        asyncio.run(lifecycle.resolve(incident.id))
        with pytest.raises(ValueError):
            asyncio.run(lifecycle.update(incident.id, status=IncidentStatus.MONITORING))

    def test_missing_incident(self, lifecycle) -> None:
        with pytest.raises(NotFoundError):
            asyncio.run(lifecycle.resolve("nope"))
        with pytest.raises(NotFoundError):
            lifecycle.get("nope")

    def test_notification_failure_does_not_break_resolve(self, incident_store, check_store) -> None:
        callback = AsyncMock(side_effect=RuntimeError("smtp down"))
        lifecycle = IncidentLifecycle(incident_store, check_store, on_resolved=callback)
        incident = lifecycle.open_or_append(check_store.create(make_check("web")), "503")
        resolved = asyncio.run(lifecycle.resolve(incident.id))
        assert resolved.status == IncidentStatus.RESOLVED

    def test_list_all_pages(self, lifecycle, check_store) -> None:
        for name in ("a", "b", "c"):
            lifecycle.open_or_append(check_store.create(make_check(name)), "down")
        listing = lifecycle.list_all(page=1, limit=2)
        assert listing["total"] == 3
        assert listing["total_pages"] == 2
        assert len(listing["incidents"]) == 2
