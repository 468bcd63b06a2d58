# file: tests/test_context_builder.py
import json
from datetime import date, timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from app.errors import NotFound, StoreError
from app.schema import Action
from engine.context_builder import (
    ContextBuilder, days_since, days_until, derive_signals, parse_health_breakdown, utc,
)

from conftest import NOW, days_ago, make_contact, make_deal, make_email, make_meeting, make_file


def mock_registry(deal=None, **returns):
    store = AsyncMock()
    store.get_deal.return_value = deal
    store.get_account.return_value = None
    store.list_deal_contacts.return_value = returns.get("contacts", [])
    store.list_meetings.return_value = returns.get("meetings", [])
    store.list_emails.return_value = returns.get("emails", [])
    store.list_files.return_value = returns.get("files", [])
    store.get_playbook.return_value = returns.get("playbook")
    store.get_health_config.return_value = None
    store.list_actions.return_value = returns.get("completed", [])
    store.get_stage_actions.return_value = returns.get("stage_actions", [])
    registry = Mock()
    registry.get_store_client.return_value = store
    return registry, store


@pytest.mark.asyncio
async def test_missing_deal_raises_not_found():
    registry, _ = mock_registry(deal=None)
    with pytest.raises(NotFound):
        await ContextBuilder(registry).build(1, user_id=1, org_id=1, now=NOW)


@pytest.mark.asyncio
async def test_build_snapshot():
    deal = make_deal(stage="proposal", health_score_breakdown=json.dumps({"params": {"1a": {"state": "unknown"}}}))
    registry, store = mock_registry(
        deal=deal,
        contacts=[make_contact(1, "champion")],
        emails=[make_email(1, sent_days_ago=4)],
        stage_actions=["Send pricing proposal"],
        completed=[Action(id=9, title="Book kickoff", completed=True)],
    )

    ctx = await ContextBuilder(registry).build(1, user_id=1, org_id=1, now=NOW)

    assert ctx.deal.id == 1
    assert ctx.health_breakdown.state_of("1a") == "unknown"
    assert ctx.playbook_stage_actions == ["Send pricing proposal"]
    assert ctx.completed_action_titles == ["Book kickoff"]
    assert ctx.derived.days_since_last_email == 4
    assert ctx.now == NOW
    store.get_stage_actions.assert_awaited_once_with("proposal", user_id=1, org_id=1)
    store.list_actions.assert_awaited_once_with(1, completed=True, user_id=1, org_id=1)


@pytest.mark.asyncio
async def test_playbook_failures_degrade_to_empty():
    registry, store = mock_registry(deal=make_deal())
    store.get_playbook.side_effect = StoreError("playbooks unavailable")
    store.get_stage_actions.side_effect = StoreError("playbooks unavailable")

    ctx = await ContextBuilder(registry).build(1, user_id=1, org_id=1, now=NOW)

    assert ctx.playbook is None
    assert ctx.playbook_stage_actions == []


@pytest.mark.asyncio
async def test_contacts_with_unusable_emails_still_build(registry):
    await registry.get_store_client().seed({
        "deals": [{"id": 1, "org_id": 1, "user_id": 1, "name": "Acme Rollout", "stage": "discovery"}],
        "contacts": [
            {"id": 10, "org_id": 1, "first_name": "Ann", "email": ""},
            {"id": 11, "org_id": 1, "first_name": "Bo", "email": "not-an-address"},
            {"id": 12, "org_id": 1, "first_name": "Cy", "email": " cy@acme.com "},
        ],
        "deal_contacts": [
            {"deal_id": 1, "contact_id": 10, "role": "champion"},
            {"deal_id": 1, "contact_id": 11, "role": "decision_maker"},
            {"deal_id": 1, "contact_id": 12, "role": "influencer"},
        ],
    })

    ctx = await ContextBuilder(registry).build(1, user_id=1, org_id=1, now=NOW)

    emails = {c.id: c.email for c in ctx.contacts}
    assert emails == {10: None, 11: None, 12: "cy@acme.com"}
    assert [c.id for c in ctx.derived.champions] == [10]


def test_parse_health_breakdown_variants():
    assert parse_health_breakdown(None) is None
    assert parse_health_breakdown("not json") is None
    assert parse_health_breakdown("[1, 2]") is None
    flat = parse_health_breakdown({"6b": {"state": "confirmed", "avgHours": 52}})
    assert flat.params["6b"].avg_hours == 52


def test_day_arithmetic():
    assert days_since(NOW - timedelta(hours=47), NOW) == 1
    assert days_until(NOW + timedelta(hours=1), NOW) == 1
    assert days_since(None, NOW) is None
    # a plain date is midnight UTC
    assert utc(date(2026, 3, 1)) == NOW.replace(day=1, hour=0)


def test_derive_signals_close_boundaries():
    for days, imminent, past in [(0, True, False), (7, True, False), (8, False, False), (-1, False, True)]:
        deal = make_deal(close_date=NOW + timedelta(days=days))
        signals = derive_signals(deal, [], [], [], [], NOW)
        assert signals.closing_imminently is imminent
        assert signals.is_past_close is past


def test_derive_signals_groups_records():
    contacts = [
        make_contact(1, "economic_buyer"), make_contact(2, "champion"),
        make_contact(3, "end_user"), make_contact(4, "executive"),
    ]
    meetings = [
        make_meeting(1, start_days_ago=5),
        make_meeting(2, start_days_ago=2),
        make_meeting(3, status="scheduled", start_days_ago=-1),
    ]
    emails = [make_email(1, sent_days_ago=2), make_email(2, direction="received", sent_days_ago=1)]
    files = [make_file(1, status="failed"), make_file(2), make_file(3, status="processing")]
    deal = make_deal(value=100_000, updated_at=days_ago(3))

    s = derive_signals(deal, contacts, meetings, emails, files, NOW)

    assert [c.id for c in s.decision_makers] == [1]
    assert [c.id for c in s.champions] == [2]
    assert [c.id for c in s.stakeholders] == [1, 2, 4]
    assert s.last_meeting.id == 2
    assert s.days_since_last_meeting == 2
    assert [m.id for m in s.upcoming_meetings] == [3]
    assert s.last_email.id == 2
    assert s.unanswered_emails == []
    assert [f.id for f in s.failed_files] == [1]
    assert [f.id for f in s.pending_files] == [3]
    assert s.days_in_stage == 3
    assert not s.is_high_value  # strictly greater than 100k
