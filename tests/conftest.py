import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure the repository root is on sys.path so imports like `import app` and `import engine` work
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from app.schema import Contact, DealContext, Deal, Email, Meeting, StorageFile
from engine.context_builder import derive_signals, parse_health_breakdown
from store.registry import StoreRegistry
from store.servers.store_server import StoreServer

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def days_ago(n: float) -> datetime:
    return NOW - timedelta(days=n)


def make_deal(**overrides) -> Deal:
    data = {
        "id": 1, "name": "Acme Rollout", "stage": "discovery", "value": 50000,
        "account_id": 7, "user_id": 1, "org_id": 1,
        "updated_at": days_ago(2), "close_date": NOW + timedelta(days=30),
        "health": "healthy",
    }
    data.update(overrides)
    return Deal(**data)


def make_contact(id, role, **overrides) -> Contact:
    data = {"id": id, "first_name": f"First{id}", "last_name": f"Last{id}",
            "email": f"contact{id}@acme.com", "deal_role": role}
    data.update(overrides)
    return Contact(**data)


def make_email(id, direction="sent", sent_days_ago=1, **overrides) -> Email:
    data = {"id": id, "deal_id": 1, "direction": direction, "subject": f"Subject {id}",
            "body": "Hello", "sent_at": days_ago(sent_days_ago)}
    data.update(overrides)
    return Email(**data)


def make_meeting(id, status="completed", start_days_ago=1, **overrides) -> Meeting:
    data = {"id": id, "deal_id": 1, "title": f"Meeting {id}", "status": status,
            "start_time": days_ago(start_days_ago)}
    data.update(overrides)
    return Meeting(**data)


def make_file(id, name="notes.pdf", status="completed", category="document") -> StorageFile:
    return StorageFile(id=id, deal_id=1, file_name=name, processing_status=status, category=category)


def make_context(deal=None, contacts=None, meetings=None, emails=None, files=None,
                 breakdown=None, stage_actions=None, completed_titles=None, health_status=None,
                 now=NOW) -> DealContext:
    deal = deal or make_deal()
    contacts = [make_contact(100, "champion", email=None)] if contacts is None else contacts
    meetings = meetings or []
    emails = emails or []
    files = files or []
    return DealContext(
        deal=deal,
        contacts=contacts,
        meetings=meetings,
        emails=emails,
        files=files,
        playbook_stage_actions=stage_actions or [],
        health_breakdown=parse_health_breakdown(breakdown),
        health_score=deal.health_score,
        health_status=health_status or deal.health or "unknown",
        completed_action_titles=completed_titles or [],
        user_id=1,
        org_id=1,
        now=now,
        derived=derive_signals(deal, contacts, meetings, emails, files, now),
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store_server(tmp_path):
    return StoreServer(tmp_path)


@pytest.fixture
def registry(store_server):
    """Registry whose client dispatches in-process to a throwaway store."""
    return StoreRegistry(server=store_server)
