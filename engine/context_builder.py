# file: engine/context_builder.py
"""
Gathers everything action generation needs for one deal into a single read-only
DealContext: the deal and its parsed health breakdown, account, contacts (with the
role assigned on this deal), meetings, emails, files, playbook, health config and the
key actions for the deal's current stage, plus pre-computed signals.

All downstream consumers work from the snapshot; no further store calls are made.
"""
from __future__ import annotations
import asyncio
import json
import logging
import math
from datetime import date, datetime, time, timezone
from typing import Any, Awaitable, List, Optional, TypeVar, Union

from pydantic import ValidationError

from app.errors import NotFound
from app.schema import (
    Contact, DealContext, Deal, DerivedSignals, Email, HealthBreakdown,
    Id, Meeting, StorageFile,
)

log = logging.getLogger("context")

T = TypeVar("T")

SECONDS_PER_DAY = 86400
CLOSED_STAGES = ("closed_won", "closed_lost")
DECISION_MAKER_ROLES = ("decision_maker", "economic_buyer")
STAKEHOLDER_ROLES = ("decision_maker", "champion", "influencer", "economic_buyer", "executive")
STAGNANT_AFTER_DAYS = 14
IMMINENT_CLOSE_DAYS = 7
HIGH_VALUE_THRESHOLD = 100_000
UNANSWERED_AFTER_DAYS = 3


def utc(value: Union[datetime, date, None]) -> Optional[datetime]:
    """Normalise a date or datetime to an aware UTC datetime (naive values are taken as UTC)."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_since(then: Union[datetime, date, None], now: datetime) -> Optional[int]:
    then = utc(then)
    if then is None:
        return None
    return math.floor((now - then).total_seconds() / SECONDS_PER_DAY)


def days_until(when: Union[datetime, date, None], now: datetime) -> Optional[int]:
    when = utc(when)
    if when is None:
        return None
    return math.ceil((when - now).total_seconds() / SECONDS_PER_DAY)


def parse_health_breakdown(raw: Any) -> Optional[HealthBreakdown]:
    """Accepts the stored breakdown as a dict or a JSON string; bad data yields None."""
    if not raw:
        return None
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(data, dict):
            return None
        if "params" not in data:
            data = {"params": data}
        return HealthBreakdown(**data)
    except (ValueError, TypeError, ValidationError) as e:
        log.warning("Unreadable health breakdown ignored: %s", e)
        return None


def derive_signals(deal: Deal, contacts: List[Contact], meetings: List[Meeting],
                   emails: List[Email], files: List[StorageFile], now: datetime) -> DerivedSignals:
    # Meetings
    completed = [
        m for m in meetings
        if m.status == "completed" or utc(m.start_time) < now
    ]
    completed.sort(key=lambda m: utc(m.start_time), reverse=True)
    upcoming = [
        m for m in meetings
        if m.status == "scheduled" and utc(m.start_time) > now
    ]
    last_meeting = completed[0] if completed else None

    # Emails
    sent = [e for e in emails if e.direction == "sent"]
    received = [e for e in emails if e.direction == "received"]
    dated = sorted((e for e in emails if e.sent_at), key=lambda e: utc(e.sent_at), reverse=True)
    last_email = dated[0] if dated else None
    unanswered = [
        e for e in sent
        if e.sent_at
        and days_since(e.sent_at, now) >= UNANSWERED_AFTER_DAYS
        and not any(r.sent_at and utc(r.sent_at) > utc(e.sent_at) for r in received)
    ]
    # oldest first: the rules follow up on the longest-waiting ones
    unanswered.sort(key=lambda e: utc(e.sent_at))

    # Deal timing
    days_in_stage = days_since(deal.updated_at, now) or 0
    days_to_close = days_until(deal.close_date, now)

    return DerivedSignals(
        completed_meetings=completed,
        upcoming_meetings=upcoming,
        last_meeting=last_meeting,
        days_since_last_meeting=days_since(last_meeting.start_time, now) if last_meeting else None,
        sent_emails=sent,
        received_emails=received,
        last_email=last_email,
        days_since_last_email=days_since(last_email.sent_at, now) if last_email else None,
        unanswered_emails=unanswered,
        decision_makers=[c for c in contacts if c.role in DECISION_MAKER_ROLES],
        champions=[c for c in contacts if c.role == "champion"],
        stakeholders=[c for c in contacts if c.role in STAKEHOLDER_ROLES],
        processed_files=[f for f in files if f.processing_status == "completed"],
        pending_files=[f for f in files if f.processing_status == "processing"],
        failed_files=[f for f in files if f.processing_status == "failed"],
        days_in_stage=days_in_stage,
        days_until_close=days_to_close,
        is_past_close=days_to_close is not None and days_to_close < 0,
        closing_imminently=days_to_close is not None and 0 <= days_to_close <= IMMINENT_CLOSE_DAYS,
        is_high_value=float(deal.value or 0) > HIGH_VALUE_THRESHOLD,
        is_stagnant=days_in_stage > STAGNANT_AFTER_DAYS and deal.stage not in CLOSED_STAGES,
    )


class ContextBuilder:
    """Builds the per-deal snapshot consumed by the rules engine and the AI enhancer"""

    def __init__(self, store_registry):
        self.store = store_registry.get_store_client()

    async def _optional(self, what: str, coro: Awaitable[T], default: T) -> T:
        # config-style lookups must never abort generation
        try:
            return await coro
        except Exception as e:
            log.warning("%s lookup failed, continuing without it: %s", what, e)
            return default

    async def build(self, deal_id: Id, user_id: Id, org_id: Id,
                    now: Optional[datetime] = None) -> DealContext:
        now = utc(now) or datetime.now(timezone.utc)
        scope = {"user_id": user_id, "org_id": org_id}

        (deal, account, contacts, meetings, emails, files,
         playbook, health_config, completed_actions) = await asyncio.gather(
            self.store.get_deal(deal_id, **scope),
            self.store.get_account(deal_id, **scope),
            self.store.list_deal_contacts(deal_id, **scope),
            self.store.list_meetings(deal_id, **scope),
            self.store.list_emails(deal_id, **scope),
            self.store.list_files(deal_id, **scope),
            self._optional("playbook", self.store.get_playbook(**scope), None),
            self._optional("health config", self.store.get_health_config(**scope), None),
            self._optional("completed actions", self.store.list_actions(deal_id, completed=True, **scope), []),
        )

        if not deal:
            raise NotFound(f"Deal {deal_id} not found")

        health_breakdown = parse_health_breakdown(deal.health_score_breakdown)

        stage_actions: List[str] = []
        if deal.stage:
            stage_actions = await self._optional(
                "playbook stage actions",
                self.store.get_stage_actions(deal.stage, **scope),
                [],
            ) or []

        derived = derive_signals(deal, contacts, meetings, emails, files, now)
        log.info(
            "context: deal=%s stage=%s contacts=%d meetings=%d emails=%d files=%d playbook_actions=%d",
            deal.id, deal.stage, len(contacts), len(meetings), len(emails), len(files), len(stage_actions),
        )

        return DealContext(
            deal=deal,
            account=account,
            contacts=contacts,
            meetings=meetings,
            emails=emails,
            files=files,
            playbook=playbook,
            playbook_stage_actions=stage_actions,
            health_config=health_config,
            health_breakdown=health_breakdown,
            health_score=deal.health_score,
            health_status=deal.health or "unknown",
            completed_action_titles=[a.title for a in completed_actions],
            user_id=user_id,
            org_id=org_id,
            now=now,
            derived=derived,
        )
