"""
Pytest fixtures and configuration for Stageflow tests.

Provides:
- Mock Supabase client for isolated testing
- Test client with the route modules patched to the mock
- Time freezing utilities
- Factory fixtures for project types, stages, rules, projects and notifications
"""
import pytest
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import patch
from uuid import uuid4

from fastapi.testclient import TestClient
from freezegun import freeze_time

from stageflow.core.database import SupabaseClient
from stageflow.main import app
from stageflow.models.schemas import WorkCalendar


# ==========================================
# MOCK SUPABASE RESPONSE & TABLE
# ==========================================

class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: list = None, error: dict = None, count: int = None):
        self.data = data or []
        self.error = error
        self.count = count if count is not None else len(self.data)

    def execute(self):
        return self


def _comparable(value: Any) -> Any:
    """Compare timestamps as instants, everything else as-is."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


class MockSupabaseTable:
    """Mock Supabase table operations (the query-builder subset the services use)."""

    def __init__(self, table_name: str, mock_data: Dict[str, list]):
        self.table_name = table_name
        self.mock_data = mock_data
        self._filters = []
        self._select_fields = "*"
        self._order_by = None
        self._order_desc = False
        self._limit = None
        self._update_data = None
        self._pending_response = None

    def select(self, fields: str = "*", count: str = None):
        self._select_fields = fields
        return self

    def eq(self, column: str, value: Any):
        self._filters.append(("eq", column, value))
        return self

    def neq(self, column: str, value: Any):
        self._filters.append(("neq", column, value))
        return self

    def in_(self, column: str, values: list):
        self._filters.append(("in", column, values))
        return self

    def gte(self, column: str, value: Any):
        """Greater than or equal filter."""
        self._filters.append(("gte", column, value))
        return self

    def lte(self, column: str, value: Any):
        """Less than or equal filter."""
        self._filters.append(("lte", column, value))
        return self

    def is_(self, column: str, value: Any):
        """IS filter (for null checks)."""
        self._filters.append(("is", column, value))
        return self

    def order(self, column: str, desc: bool = False):
        self._order_by = column
        self._order_desc = desc
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def insert(self, data: Any):
        """Mock insert operation."""
        rows = data if isinstance(data, list) else [data]
        stored = []
        for item in rows:
            row = dict(item)
            row.setdefault("id", str(uuid4()))
            self.mock_data.setdefault(self.table_name, []).append(row)
            stored.append(dict(row))
        self._pending_response = MockSupabaseResponse(stored)
        return self

    def upsert(self, data: Any, on_conflict: str = "id", ignore_duplicates: bool = False):
        """
        Mock upsert operation.

        With ``ignore_duplicates`` rows whose ``on_conflict`` value exists are
        skipped and only inserted rows are returned, like ON CONFLICT DO NOTHING.
        """
        rows = data if isinstance(data, list) else [data]
        table = self.mock_data.setdefault(self.table_name, [])
        results = []

        for item in rows:
            existing = next(
                (row for row in table if row.get(on_conflict) == item.get(on_conflict)),
                None
            )
            if existing is not None:
                if ignore_duplicates:
                    continue
                existing.update(item)
                results.append(dict(existing))
            else:
                row = dict(item)
                row.setdefault("id", str(uuid4()))
                table.append(row)
                results.append(dict(row))

        self._pending_response = MockSupabaseResponse(results)
        return self

    def update(self, data: dict):
        """Mock update operation - returns self for chaining."""
        self._update_data = data
        return self

    def _apply_filters(self, results: list) -> list:
        """Apply all filters to results."""
        for op, column, value in self._filters:
            if op == "eq":
                results = [r for r in results if r.get(column) == value]
            elif op == "neq":
                results = [r for r in results if r.get(column) != value]
            elif op == "in":
                results = [r for r in results if r.get(column) in value]
            elif op == "is":
                expected = None if value in ("null", None) else value
                results = [r for r in results if r.get(column) is expected]
            elif op == "gte":
                results = [
                    r for r in results
                    if r.get(column) is not None and _comparable(r.get(column)) >= _comparable(value)
                ]
            elif op == "lte":
                results = [
                    r for r in results
                    if r.get(column) is not None and _comparable(r.get(column)) <= _comparable(value)
                ]
        return results

    def execute(self):
        """Execute the query and return results."""
        if self._pending_response is not None:
            return self._pending_response

        table_data = self.mock_data.get(self.table_name, [])
        results = self._apply_filters(list(table_data))

        if self._update_data is not None:
            for row in results:
                row.update(self._update_data)
            return MockSupabaseResponse([dict(row) for row in results])

        if self._order_by:
            present = [r for r in results if r.get(self._order_by) is not None]
            missing = [r for r in results if r.get(self._order_by) is None]
            present.sort(key=lambda r: _comparable(r.get(self._order_by)), reverse=self._order_desc)
            results = present + missing

        total_count = len(results)
        if self._limit:
            results = results[:self._limit]

        return MockSupabaseResponse([dict(row) for row in results], count=total_count)


class MockSupabaseClientInner:
    """Mock inner Supabase client (the actual client with table() method)."""

    def __init__(self, mock_data: Dict[str, list]):
        self.mock_data = mock_data

    def table(self, table_name: str) -> MockSupabaseTable:
        return MockSupabaseTable(table_name, self.mock_data)


class MockSupabaseClient:
    """
    Mock Supabase client wrapper (matches SupabaseClient class structure).

    The concurrency helpers are the real SupabaseClient methods running
    against the in-memory tables.
    """

    insert_if_absent = SupabaseClient.insert_if_absent
    compare_and_set = SupabaseClient.compare_and_set

    def __init__(self):
        self.mock_data: Dict[str, list] = {
            "project_types": [],
            "stages": [],
            "projects": [],
            "project_chronology": [],
            "notification_rules": [],
            "scheduled_notifications": [],
            "notification_history": [],
            "people": [],
            "clients": [],
            "push_subscriptions": [],
            "client_tasks": [],
        }
        self.client = MockSupabaseClientInner(self.mock_data)

    def clear(self):
        """Clear all mock data."""
        for key in self.mock_data:
            self.mock_data[key] = []


# ==========================================
# FIXTURES
# ==========================================

@pytest.fixture(scope="function")
def fresh_mock_client() -> MockSupabaseClient:
    """Function-scoped fresh mock client (clean for each test)."""
    return MockSupabaseClient()


@pytest.fixture(scope="function")
def mock_data(fresh_mock_client) -> Dict[str, list]:
    """Access to the mock data store for direct manipulation."""
    return fresh_mock_client.mock_data


@pytest.fixture(scope="function")
def client(fresh_mock_client) -> Generator[TestClient, None, None]:
    """
    Create test client with mocked Supabase.

    Each test gets a fresh mock client with clean data.
    """
    with patch("stageflow.api.routes.notification_routes.get_supabase_client", return_value=fresh_mock_client):
        with patch("stageflow.api.routes.chronology_routes.get_supabase_client", return_value=fresh_mock_client):
            with TestClient(app) as test_client:
                yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def calendar() -> WorkCalendar:
    """Mon-Fri 09:00-17:00 UTC."""
    return WorkCalendar(day_start=time(9, 0), day_end=time(17, 0))


# ==========================================
# TIME FIXTURES
# ==========================================

@pytest.fixture
def frozen_now():
    """Freeze time at Monday 2024-06-03 08:00 UTC."""
    now = datetime(2024, 6, 3, 8, 0, 0, tzinfo=timezone.utc)
    with freeze_time(now):
        yield now


@pytest.fixture
def frozen_early():
    """Freeze time at Wednesday 2024-05-01 08:00 UTC, before the sample dates."""
    now = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
    with freeze_time(now):
        yield now


# ==========================================
# FACTORY FIXTURES
# ==========================================

@pytest.fixture
def create_project_type(mock_data):
    """
    Factory fixture to create a project type with ordered stages.

    Returns a function that creates the type and returns its stages by id.
    """
    def _create(
        stage_ids: List[str] = ("review", "approved", "done"),
        project_type_id: str = "type-1",
        limits: Optional[Dict[str, Dict[str, float]]] = None,
    ) -> Dict[str, Any]:
        mock_data["project_types"].append({
            "id": project_type_id,
            "name": "Onboarding",
            "is_active": True,
        })

        stages = {}
        for order, stage_id in enumerate(stage_ids):
            stage = {
                "id": stage_id,
                "project_type_id": project_type_id,
                "name": stage_id.title(),
                "order": order,
                "max_instance_time_hours": None,
                "max_total_time_hours": None,
                "is_final": order == len(stage_ids) - 1,
            }
            stage.update((limits or {}).get(stage_id, {}))
            mock_data["stages"].append(stage)
            stages[stage_id] = stage

        return {"id": project_type_id, "stages": stages}

    return _create


@pytest.fixture
def create_project(mock_data):
    """Factory fixture to create projects."""
    def _create(
        project_type_id: str = "type-1",
        current_stage_id: Optional[str] = None,
        start_date: Optional[date] = None,
        due_date: Optional[date] = None,
        related_people: Optional[List[str]] = None,
        client_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        is_active: bool = True,
    ) -> Dict[str, Any]:
        project = {
            "id": str(uuid4()),
            "project_type_id": project_type_id,
            "current_stage_id": current_stage_id,
            "client_id": client_id,
            "start_date": start_date.isoformat() if start_date else None,
            "due_date": due_date.isoformat() if due_date else None,
            "is_active": is_active,
            "related_people": related_people or [],
            "created_at": (created_at or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)).isoformat(),
        }
        mock_data["projects"].append(project)
        return project

    return _create


@pytest.fixture
def create_rule(mock_data):
    """Factory fixture to create notification rule rows."""
    def _create(kind: str = "date", project_type_id: str = "type-1", **fields) -> Dict[str, Any]:
        rule = {
            "id": fields.pop("id", f"rule-{uuid4().hex[:8]}"),
            "kind": kind,
            "project_type_id": project_type_id,
            "channel": "email",
            "template_id": None,
            "category": "project_notification",
            "is_active": True,
            "has_client_task": False,
            "reminders": [],
        }
        if kind == "date":
            rule.update({
                "stage_id": None,
                "trigger": None,
                "date_reference": "due_date",
                "offset_type": "before",
                "offset_days": 3,
            })
        else:
            rule.update({
                "stage_id": None,
                "trigger": "entry",
                "date_reference": None,
                "offset_type": None,
                "offset_days": None,
            })
        rule.update(fields)
        mock_data["notification_rules"].append(rule)
        return rule

    return _create


@pytest.fixture
def create_notification(mock_data):
    """Factory fixture to insert scheduled notification rows directly."""
    def _create(
        project_id: str = "project-1",
        status: str = "scheduled",
        scheduled_for: datetime = datetime(2024, 6, 7, 0, 0, tzinfo=timezone.utc),
        channel: str = "email",
        category: str = "project_notification",
        **extra: Any,
    ) -> Dict[str, Any]:
        notification_id = extra.pop("id", str(uuid4()))
        row = {
            "id": notification_id,
            "project_id": project_id,
            "rule_id": "rule-1",
            "category": category,
            "channel": channel,
            "trigger_kind": "date_offset",
            "scheduled_for": scheduled_for.isoformat(),
            "status": status,
            "sent_at": None,
            "failure_reason": None,
            "recipient_id": None,
            "notification_type_id": "rule-1",
            "client_task_id": None,
            "cancelled_by": None,
            "cancelled_at": None,
            "cancel_reason": None,
            "claim_token": None,
            "claimed_at": None,
            "idempotency_key": f"{project_id}:rule-1:-:{notification_id}",
        }
        row.update(extra)
        mock_data["scheduled_notifications"].append(row)
        return row

    return _create


@pytest.fixture
def create_person(mock_data):
    """Factory fixture to create people (notification recipients)."""
    def _create(
        name: str = "Alice Johnson",
        email: Optional[str] = "alice@example.com",
        phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        person = {
            "id": str(uuid4()),
            "name": name,
            "email": email,
            "notification_email": None,
            "phone": phone,
        }
        mock_data["people"].append(person)
        return person

    return _create


# ==========================================
# CLEANUP
# ==========================================

@pytest.fixture(autouse=True)
def cleanup_overrides():
    """Reset dependency overrides after each test."""
    yield
    app.dependency_overrides.clear()


# ==========================================
# MARKERS
# ==========================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (isolated, fast)")
    config.addinivalue_line("markers", "integration: Integration tests (database required)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full workflow)")
    config.addinivalue_line("markers", "edge: Edge case tests")
