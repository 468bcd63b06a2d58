# file: tests/test_rules.py
import json
from datetime import timedelta

import pytest

from app.schema import ActionCandidate, ActionType, NextStep, SourceRule
from engine.next_step import resolve_next_step
from engine.rules import RulesEngine, deduplicate

from conftest import (
    NOW, days_ago, make_contact, make_context, make_deal, make_email, make_file, make_meeting,
)


def by_rule(actions, rule):
    return [a for a in actions if a.source_rule == rule]


HEALTH_TRIGGERS = [
    ("1a", "unknown", SourceRule.HEALTH_1A_UNKNOWN),
    ("1b", "confirmed", SourceRule.HEALTH_1B_SLIPPED),
    ("1c", "unknown", SourceRule.HEALTH_1C_UNKNOWN),
    ("2a", "unknown", SourceRule.HEALTH_2A_NO_BUYER),
    ("2b", "absent", SourceRule.HEALTH_2B_NO_EXEC),
    ("2c", "absent", SourceRule.HEALTH_2C_SINGLE_THREAD),
    ("3a", "unknown", SourceRule.HEALTH_3A_LEGAL),
    ("3b", "unknown", SourceRule.HEALTH_3B_SECURITY),
    ("4a", "confirmed", SourceRule.HEALTH_4A_OVERSIZED),
    ("4c", "unknown", SourceRule.HEALTH_4C_SCOPE),
    ("5a", "confirmed", SourceRule.HEALTH_5A_COMPETITIVE),
    ("5b", "confirmed", SourceRule.HEALTH_5B_PRICE),
    ("5c", "confirmed", SourceRule.HEALTH_5C_DISCOUNT),
    ("6a", "confirmed", SourceRule.HEALTH_6A_NO_MEETING),
    ("6b", "confirmed", SourceRule.HEALTH_6B_SLOW_RESPONSE),
]


@pytest.mark.parametrize("key,state,rule", HEALTH_TRIGGERS)
def test_each_health_param_yields_one_action(key, state, rule):
    param = {"state": state}
    if key == "6a":
        param["daysSinceLastMeeting"] = 21
    ctx = make_context(breakdown={"params": {key: param}})

    actions = RulesEngine().health_param_rules(ctx)

    matching = [a for a in actions if a.health_param == key]
    assert len(matching) == 1
    assert matching[0].source_rule == rule
    assert matching[0].priority in ("high", "medium")
    assert 1 <= (matching[0].due_date - NOW).days <= 5


@pytest.mark.parametrize("key,state,rule", HEALTH_TRIGGERS)
def test_health_param_other_states_are_ignored(key, state, rule):
    ctx = make_context(breakdown={"params": {key: {"state": "healthy"}}})
    assert RulesEngine().health_param_rules(ctx) == []


def test_2a_fires_when_absent():
    ctx = make_context(breakdown={"params": {"2a": {"state": "absent"}}})
    assert by_rule(RulesEngine().health_param_rules(ctx), SourceRule.HEALTH_2A_NO_BUYER)


def test_2b_suppressed_when_decision_maker_present():
    ctx = make_context(
        contacts=[make_contact(1, "decision_maker")],
        breakdown={"params": {"2b": {"state": "absent"}}},
    )
    assert RulesEngine().health_param_rules(ctx) == []


def test_6a_needs_a_days_value():
    ctx = make_context(breakdown={"params": {"6a": {"state": "confirmed"}}})
    assert RulesEngine().health_param_rules(ctx) == []

    ctx = make_context(
        meetings=[make_meeting(1, start_days_ago=9)],
        breakdown={"params": {"6a": {"state": "confirmed"}}},
    )
    actions = RulesEngine().health_param_rules(ctx)
    assert len(actions) == 1
    assert "9 days" in actions[0].description


def test_5a_names_competitors():
    ctx = make_context(breakdown={"params": {
        "5a": {"state": "confirmed", "competitors": [{"name": "Globex"}, {"name": "Initech"}]},
    }})
    action = RulesEngine().health_param_rules(ctx)[0]
    assert "Globex, Initech" in action.description
    assert "Globex, Initech" in action.suggested_action


def test_breakdown_stored_as_json_string():
    raw = json.dumps({"params": {"1a": {"state": "unknown"}}})
    ctx = make_context(breakdown=raw)
    assert by_rule(RulesEngine().health_param_rules(ctx), SourceRule.HEALTH_1A_UNKNOWN)


def test_missing_breakdown_produces_nothing():
    assert RulesEngine().health_param_rules(make_context()) == []


# ---------- stage and timing ----------

def test_stagnation_boundary():
    engine = RulesEngine()
    ctx = make_context(deal=make_deal(updated_at=days_ago(14)))
    assert not ctx.derived.is_stagnant
    assert not by_rule(engine.stage_rules(ctx), SourceRule.STAGNANT_DEAL)

    ctx = make_context(deal=make_deal(updated_at=days_ago(15)))
    assert ctx.derived.is_stagnant
    assert by_rule(engine.stage_rules(ctx), SourceRule.STAGNANT_DEAL)


@pytest.mark.parametrize("stage", ["closed_won", "closed_lost"])
def test_closed_deals_never_stagnant(stage):
    ctx = make_context(deal=make_deal(stage=stage, updated_at=days_ago(90)))
    assert not ctx.derived.is_stagnant


def test_closing_imminent_and_past_close():
    engine = RulesEngine()
    ctx = make_context(deal=make_deal(close_date=NOW + timedelta(days=3)))
    imminent = by_rule(engine.stage_rules(ctx), SourceRule.CLOSE_IMMINENT)
    assert len(imminent) == 1
    assert "closes in 3 days" in imminent[0].title

    ctx = make_context(deal=make_deal(close_date=NOW - timedelta(days=2)))
    past = by_rule(engine.stage_rules(ctx), SourceRule.PAST_CLOSE_DATE)
    assert len(past) == 1
    assert "2 days past close date" in past[0].title


def test_no_close_date_is_valid():
    ctx = make_context(deal=make_deal(close_date=None))
    assert ctx.derived.days_until_close is None
    actions = RulesEngine().stage_rules(ctx)
    assert not by_rule(actions, SourceRule.CLOSE_IMMINENT)
    assert not by_rule(actions, SourceRule.PAST_CLOSE_DATE)


def test_high_value_without_recent_meeting():
    engine = RulesEngine()
    deal = make_deal(value=250000)
    ctx = make_context(deal=deal, meetings=[make_meeting(1, start_days_ago=10)])
    assert by_rule(engine.stage_rules(ctx), SourceRule.HIGH_VALUE_NO_MEETING)

    # no meetings at all: no days value to compare
    ctx = make_context(deal=deal)
    assert not by_rule(engine.stage_rules(ctx), SourceRule.HIGH_VALUE_NO_MEETING)


def test_stage_specific_rules():
    engine = RulesEngine()

    ctx = make_context(deal=make_deal(stage="qualified"))
    assert by_rule(engine.stage_rules(ctx), SourceRule.STAGE_QUALIFIED_NO_DISCOVERY)

    ctx = make_context(deal=make_deal(stage="demo"),
                       meetings=[make_meeting(1, meeting_type="product_demo")])
    assert not by_rule(engine.stage_rules(ctx), SourceRule.STAGE_DEMO_NO_DEMO)
    ctx = make_context(deal=make_deal(stage="demo"), meetings=[make_meeting(1, meeting_type="discovery")])
    assert by_rule(engine.stage_rules(ctx), SourceRule.STAGE_DEMO_NO_DEMO)

    ctx = make_context(deal=make_deal(stage="negotiation"))
    assert by_rule(engine.stage_rules(ctx), SourceRule.STAGE_NEGOTIATION_BLOCKERS)


@pytest.mark.parametrize("days,priority", [(3, None), (5, "medium"), (9, "high")])
def test_proposal_followup(days, priority):
    ctx = make_context(deal=make_deal(stage="proposal"), emails=[make_email(1, sent_days_ago=days)])
    found = by_rule(RulesEngine().stage_rules(ctx), SourceRule.STAGE_PROPOSAL_FOLLOWUP)
    if priority is None:
        assert found == []
    else:
        assert found[0].priority == priority


def test_proposal_followup_needs_an_email():
    ctx = make_context(deal=make_deal(stage="proposal"))
    assert not by_rule(RulesEngine().stage_rules(ctx), SourceRule.STAGE_PROPOSAL_FOLLOWUP)


# ---------- contacts ----------

def test_zero_contacts_escape_hatch():
    ctx = make_context(contacts=[])
    actions = RulesEngine().contact_rules(ctx)
    assert len(actions) == 1
    assert actions[0].source_rule == SourceRule.NO_CONTACTS


def test_decision_maker_never_contacted():
    ctx = make_context(contacts=[make_contact(5, "economic_buyer")])
    actions = by_rule(RulesEngine().contact_rules(ctx), SourceRule.DECISION_MAKER_NO_CONTACT)
    assert len(actions) == 1
    assert "over 30 days" in actions[0].description
    assert actions[0].contact_id == 5


def test_decision_maker_contact_window():
    engine = RulesEngine()
    contact = make_contact(5, "decision_maker")
    recent = make_context(contacts=[contact], emails=[make_email(1, sent_days_ago=14, contact_id=5)])
    assert not by_rule(engine.contact_rules(recent), SourceRule.DECISION_MAKER_NO_CONTACT)

    stale = make_context(contacts=[contact], emails=[make_email(1, sent_days_ago=15, contact_id=5)])
    actions = by_rule(engine.contact_rules(stale), SourceRule.DECISION_MAKER_NO_CONTACT)
    assert "15 days" in actions[0].description


def test_champion_nurture_threshold():
    engine = RulesEngine()
    champion = make_contact(6, "champion")
    ctx = make_context(contacts=[champion], emails=[make_email(1, sent_days_ago=7, contact_id=6)])
    assert not by_rule(engine.contact_rules(ctx), SourceRule.CHAMPION_NURTURE)
    ctx = make_context(contacts=[champion], emails=[make_email(1, sent_days_ago=8, contact_id=6)])
    assert by_rule(engine.contact_rules(ctx), SourceRule.CHAMPION_NURTURE)


# ---------- meetings ----------

def test_meeting_prep_within_a_day():
    engine = RulesEngine()
    soon = make_meeting(1, status="scheduled", start_time=NOW + timedelta(hours=12))
    later = make_meeting(2, status="scheduled", start_time=NOW + timedelta(days=3))
    actions = by_rule(engine.meeting_rules(make_context(meetings=[soon, later])), SourceRule.MEETING_PREP)
    assert [a.title for a in actions] == ["Prepare for: Meeting 1"]


def test_meeting_followup_until_recap_sent():
    engine = RulesEngine()
    meeting = make_meeting(1, start_days_ago=1)
    ctx = make_context(meetings=[meeting])
    assert by_rule(engine.meeting_rules(ctx), SourceRule.MEETING_FOLLOWUP)

    ctx = make_context(meetings=[meeting], emails=[make_email(1, sent_days_ago=0.5)])
    assert not by_rule(engine.meeting_rules(ctx), SourceRule.MEETING_FOLLOWUP)

    ctx = make_context(meetings=[make_meeting(2, start_days_ago=3)])
    assert not by_rule(engine.meeting_rules(ctx), SourceRule.MEETING_FOLLOWUP)


# ---------- emails ----------

def test_unanswered_email_channel_switch_boundary():
    engine = RulesEngine()

    ctx = make_context(emails=[make_email(1, sent_days_ago=7)])
    action = by_rule(engine.email_rules(ctx), SourceRule.UNANSWERED_EMAIL)[0]
    assert action.priority == "medium"
    assert resolve_next_step(action) == NextStep.EMAIL

    ctx = make_context(emails=[make_email(1, sent_days_ago=8)])
    action = by_rule(engine.email_rules(ctx), SourceRule.UNANSWERED_EMAIL)[0]
    assert action.priority == "high"
    assert resolve_next_step(action) == NextStep.CALL


def test_reply_clears_unanswered_and_at_most_two_followups():
    engine = RulesEngine()
    ctx = make_context(emails=[
        make_email(1, sent_days_ago=10),
        make_email(2, direction="received", sent_days_ago=9),
    ])
    assert engine.email_rules(ctx) == []

    ctx = make_context(emails=[make_email(i, sent_days_ago=4 + i) for i in range(1, 5)])
    assert len(engine.email_rules(ctx)) == 2


def test_followups_pick_the_oldest_unanswered_emails():
    engine = RulesEngine()
    # stored newest first
    ctx = make_context(emails=[
        make_email(1, sent_days_ago=5),
        make_email(2, sent_days_ago=6),
        make_email(3, sent_days_ago=20),
    ])

    titles = [a.title for a in engine.email_rules(ctx)]

    assert len(titles) == 2
    assert '"Subject 3"' in titles[0]
    assert '"Subject 2"' in titles[1]
    assert not any('"Subject 1"' in t for t in titles)


# ---------- files ----------

def test_file_rules():
    engine = RulesEngine()

    ctx = make_context(deal=make_deal(stage="demo"))
    assert by_rule(engine.file_rules(ctx), SourceRule.NO_FILES)
    ctx = make_context(deal=make_deal(stage="discovery"))
    assert not by_rule(engine.file_rules(ctx), SourceRule.NO_FILES)

    ctx = make_context(files=[make_file(1, "broken.docx", status="failed")])
    failed = by_rule(engine.file_rules(ctx), SourceRule.FAILED_FILE)
    assert failed[0].priority == "low"
    assert "broken.docx" in failed[0].title


def test_proposal_document_detection():
    engine = RulesEngine()
    deal = make_deal(stage="proposal")
    ctx = make_context(deal=deal, files=[make_file(1, "Acme_SOW_v2.pdf")])
    assert not by_rule(engine.file_rules(ctx), SourceRule.NO_PROPOSAL_DOC)

    ctx = make_context(deal=deal, files=[make_file(1, "Acme_SOW_v2.pdf", category="image")])
    assert by_rule(engine.file_rules(ctx), SourceRule.NO_PROPOSAL_DOC)


# ---------- playbook ----------

def test_playbook_actions_become_candidates():
    text = "Schedule demo call with technical stakeholders"
    ctx = make_context(deal=make_deal(stage="negotiation"), stage_actions=[text])
    actions = RulesEngine().playbook_rules(ctx)

    assert len(actions) == 1
    action = actions[0]
    assert action.source == "playbook"
    assert action.source_rule == SourceRule.PLAYBOOK
    assert action.action_type == ActionType.MEETING_SCHEDULE
    assert action.priority == "high"
    assert action.due_date == NOW + timedelta(days=2)
    assert "demo" in action.keywords
    assert action.requires_external_evidence
    assert action.deal_stage == "negotiation"


def test_completed_playbook_actions_are_not_repeated():
    ctx = make_context(
        stage_actions=["Send pricing proposal", "Book kickoff"],
        completed_titles=["  send PRICING proposal "],
    )
    assert [a.title for a in RulesEngine().playbook_rules(ctx)] == ["Book kickoff"]


def test_rule_actions_default_to_auto_generated():
    ctx = make_context(contacts=[])
    assert all(a.source == "auto_generated" for a in RulesEngine().generate(ctx))


# ---------- whole engine ----------

def _candidate(title):
    return ActionCandidate(title=title, action_type=ActionType.MANUAL, due_date=NOW,
                           source_rule=SourceRule.NO_CONTACTS)


def test_deduplicate_keeps_first_and_is_idempotent():
    items = [_candidate("Call Bob"), _candidate("  call bob "), _candidate("Email Ann")]
    once = deduplicate(items)
    assert [c.title for c in once] == ["Call Bob", "Email Ann"]
    assert deduplicate(once) == once


def test_generate_is_deterministic_and_unique():
    ctx = make_context(
        deal=make_deal(stage="proposal", updated_at=days_ago(20), close_date=NOW + timedelta(days=4)),
        emails=[make_email(1, sent_days_ago=9)],
        breakdown={"params": {"1a": {"state": "unknown"}, "5b": {"state": "confirmed"}}},
        stage_actions=["Send pricing proposal"],
    )
    first = [a.title for a in RulesEngine().generate(ctx)]
    second = [a.title for a in RulesEngine().generate(ctx)]
    assert first == second
    assert len({t.lower().strip() for t in first}) == len(first)
