# file: engine/enhancer.py
"""
Optional AI pass after the rules engine: asks the LLM for a few extra,
deal-specific actions when the deal looks at risk.
"""
from __future__ import annotations
import logging
from datetime import timedelta
from typing import Any, List, Optional

from app.schema import ActionCandidate, ActionConfig, ActionType, DealContext, NextStep, SourceRule
from app.tools.llm import ollama_generate_json

log = logging.getLogger("generator")

MAX_AI_ACTIONS = 5
PRIORITIES = ("high", "medium", "low")

SYSTEM_PROMPT = "You are a B2B sales strategy assistant. You answer with JSON only."

ENHANCER_PROMPT = """Analyze this deal and generate ADDITIONAL actions the sales rep should take RIGHT NOW.

For each action, choose the most effective NEXT STEP channel based on the deal context:
- "email": send an email
- "call": phone call (emails are being ignored or urgency is high)
- "whatsapp": WhatsApp message (informal relationship, email/call not working)
- "linkedin": LinkedIn message (no direct contact, or a warm touch)
- "slack": internal Slack message (approvals, escalations, team coordination)
- "document": create or prepare a document (proposals, battlecards, ROI docs)
- "internal_task": internal work with no customer contact

## DEAL
Name: {name}
Stage: {stage}
Value: ${value:,.0f}
Close date: {close_date}
Days until close: {days_until_close}
Health: {health} (score: {health_score}/100)
Days in current stage: {days_in_stage}
Meeting cadence: {meeting_cadence}
Days since last email: {days_since_email}

## CONTACTS ({contact_count} total)
{contacts}

## RECENT EMAILS
{emails}

## RECENT MEETINGS
{meetings}

## FILES
{files}

## HEALTH SCORE GAPS
{gaps}

## ACTIONS ALREADY GENERATED (do NOT duplicate)
{existing}

---

Generate 2-5 ADDITIONAL specific, actionable next steps that the list above missed.

Return ONLY a JSON object of the form {{"actions": [...]}} where each item is:
{{
  "title": "Specific action title (max 80 chars)",
  "description": "Why this action matters now (1-2 sentences)",
  "action_type": "email_send|meeting_schedule|document_prep|task_complete|follow_up",
  "next_step": "email|call|whatsapp|linkedin|slack|document|internal_task",
  "priority": "high|medium|low",
  "due_days": 0-7,
  "suggested_action": "Specific how-to (1-2 sentences)",
  "confidence": 0.0-1.0,
  "reasoning": "What signal triggered this (1 sentence)"
}}"""


def should_run(ctx: DealContext, rule_actions: List[ActionCandidate], config: ActionConfig) -> bool:
    if not config.ai_enhanced_generation or config.generation_mode == "manual":
        return False
    status = ctx.health_status
    if status == "risk":
        return True
    if ctx.derived.is_high_value and status == "watch" and len(rule_actions) < 4:
        return True
    if status == "watch" and len(rule_actions) < 2:
        return True
    return ctx.derived.closing_imminently and status != "healthy"


def build_prompt(ctx: DealContext, rule_actions: List[ActionCandidate]) -> str:
    d = ctx.derived
    emails = "\n".join(
        f"[{e.direction.upper()}] {e.sent_at.date() if e.sent_at else '?'}: "
        f"{e.subject or 'No subject'}: {(e.body or '')[:200]}"
        for e in ctx.emails[:5]
    )
    meetings = "\n".join(
        f"{m.start_time.date()}: {m.title or 'Meeting'} ({m.status}): {(m.notes or m.description or 'No notes')[:150]}"
        for m in ctx.meetings[:3]
    )
    files = "\n".join(
        f"{f.file_name} ({f.category or 'unknown'})" + (f": {f.ai_summary[:150]}" if f.ai_summary else "")
        for f in ctx.files[:5]
    )
    contacts = "\n".join(
        f"{c.full_name}: {c.title or 'Unknown title'} ({c.role or 'unknown role'})"
        for c in ctx.contacts[:5]
    )
    gaps = "No health breakdown available"
    if ctx.health_breakdown and ctx.health_breakdown.params:
        gaps = "\n".join(
            f"{key} ({p.label or key}): {p.state}"
            for key, p in ctx.health_breakdown.params.items()
            if p.state in ("unknown", "absent") or (p.state == "confirmed" and (getattr(p, "impact", 0) or 0) < 0)
        ) or "No gaps flagged"
    existing = "\n".join(f"- {a.title} [next_step: {a.next_step.value if a.next_step else 'unset'}]" for a in rule_actions)

    return ENHANCER_PROMPT.format(
        name=ctx.deal.name,
        stage=ctx.deal.stage,
        value=ctx.deal.value or 0,
        close_date=ctx.deal.close_date or "Not set",
        days_until_close=d.days_until_close if d.days_until_close is not None else "Unknown",
        health=ctx.health_status.upper(),
        health_score=ctx.health_score if ctx.health_score is not None else "N/A",
        days_in_stage=d.days_in_stage,
        meeting_cadence=(
            f"{d.days_since_last_meeting} days since last meeting"
            if d.days_since_last_meeting is not None else "no meetings on record"
        ),
        days_since_email=d.days_since_last_email if d.days_since_last_email is not None else "no emails on record",
        contact_count=len(ctx.contacts),
        contacts=contacts or "None",
        emails=emails or "No emails",
        meetings=meetings or "No meetings",
        files=files or "No files",
        gaps=gaps,
        existing=existing or "None yet",
    )


def _due_days(raw: Any) -> int:
    try:
        return max(0, min(7, int(raw)))
    except (TypeError, ValueError):
        return 1


def parse_actions(data: Any, ctx: DealContext) -> List[ActionCandidate]:
    items = data.get("actions") if isinstance(data, dict) else data
    if not isinstance(items, list):
        return []

    out: List[ActionCandidate] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("title") or not item.get("priority"):
            continue
        try:
            action_type = ActionType(item.get("action_type"))
        except ValueError:
            continue
        try:
            next_step: Optional[NextStep] = NextStep(item.get("next_step"))
        except ValueError:
            next_step = None
        out.append(ActionCandidate(
            title=str(item["title"])[:255],
            description=str(item.get("description") or ""),
            action_type=action_type,
            priority=item["priority"] if item["priority"] in PRIORITIES else "medium",
            due_date=ctx.now + timedelta(days=_due_days(item.get("due_days"))),
            deal_id=ctx.deal.id,
            account_id=ctx.deal.account_id,
            suggested_action=item.get("suggested_action") or None,
            context=item.get("reasoning") or None,
            source="ai_generated",
            source_rule=SourceRule.AI_ENHANCER,
            next_step_override=next_step,
        ))
        if len(out) >= MAX_AI_ACTIONS:
            break
    return out


class ActionsAIEnhancer:
    """Adds AI-suggested actions for deals the rules alone do not cover well"""

    def __init__(self, llm=None):
        self.llm = llm or ollama_generate_json

    async def enhance(self, ctx: DealContext, rule_actions: List[ActionCandidate],
                      config: ActionConfig) -> List[ActionCandidate]:
        if not should_run(ctx, rule_actions, config):
            return []
        try:
            data = await self.llm(build_prompt(ctx, rule_actions), system=SYSTEM_PROMPT)
            actions = parse_actions(data, ctx)
        except Exception as e:
            log.error("AI enhancer failed for deal %s: %s", ctx.deal.id, e)
            return []
        log.info("AI enhancer: %d additional action(s) for deal %s", len(actions), ctx.deal.id)
        return actions
