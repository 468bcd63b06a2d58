# file: engine/rules.py
"""
Rules-based action generation. Pure function of a DealContext: no I/O, no AI.

Rule groups:
  health params   targeted actions from the health score breakdown
  stage / timing  stagnation, close date, high value, stage-specific checks
  contacts        role-based outreach
  meetings        prep and follow-up
  emails          unanswered sent mail
  files           missing documents, failed imports
  playbook        stage key actions not yet completed
"""
from __future__ import annotations
import logging
import re
from datetime import timedelta
from typing import Callable, Iterable, List, Optional

from app.schema import ActionCandidate, ActionType, Contact, DealContext, NextStep, SourceRule
from engine import playbook as pb
from engine.context_builder import days_since, days_until, utc

log = logging.getLogger("rules")

ACTIVE_FILE_STAGES = ("demo", "proposal", "negotiation", "closing")
PROPOSAL_STAGES = ("proposal", "negotiation")
PROPOSAL_DOC = re.compile(r"proposal|quote|pricing|sow|contract", re.I)

DECISION_MAKER_STALE_DAYS = 14
CHAMPION_STALE_DAYS = 7
MEETING_FOLLOWUP_WINDOW_DAYS = 2
UNANSWERED_ESCALATE_DAYS = 7
MAX_UNANSWERED_FOLLOWUPS = 2


def _plural(n, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def normalise_title(title: str) -> str:
    return (title or "").lower().strip()


def deduplicate(candidates: Iterable[ActionCandidate]) -> List[ActionCandidate]:
    """Drop later candidates whose title matches an earlier one (case and outer whitespace ignored)."""
    seen = set()
    unique = []
    for c in candidates:
        key = normalise_title(c.title)
        if key in seen:
            continue
        seen.add(key)
        unique.append(c)
    return unique


class RulesEngine:
    """Turns a deal snapshot into deduplicated action candidates"""

    def __init__(self):
        self.groups: List[Callable[[DealContext], List[ActionCandidate]]] = [
            self.health_param_rules,
            self.stage_rules,
            self.contact_rules,
            self.meeting_rules,
            self.email_rules,
            self.file_rules,
            self.playbook_rules,
        ]

    def generate(self, ctx: DealContext) -> List[ActionCandidate]:
        candidates: List[ActionCandidate] = []
        for group in self.groups:
            produced = group(ctx)
            log.debug("%s: %d candidate(s)", group.__name__, len(produced))
            candidates.extend(produced)

        unique = deduplicate(candidates)
        log.info("rules: deal=%s candidates=%d after_dedup=%d", ctx.deal.id, len(candidates), len(unique))
        return unique

    # ---------- helpers ----------

    @staticmethod
    def _action(ctx: DealContext, *, title: str, description: str, action_type: ActionType,
                priority: str, due_days: int, source_rule: SourceRule,
                suggested_action: Optional[str] = None, health_param: Optional[str] = None,
                contact_id=None, keywords: Optional[List[str]] = None,
                requires_external_evidence: bool = False, deal_stage: Optional[str] = None,
                source: str = "auto_generated",
                next_step_override: Optional[NextStep] = None) -> ActionCandidate:
        return ActionCandidate(
            title=title,
            description=description,
            action_type=action_type,
            priority=priority,
            due_date=ctx.now + timedelta(days=due_days),
            deal_id=ctx.deal.id,
            account_id=ctx.deal.account_id,
            contact_id=contact_id,
            suggested_action=suggested_action,
            health_param=health_param,
            keywords=keywords,
            requires_external_evidence=requires_external_evidence,
            deal_stage=deal_stage,
            source=source,
            source_rule=source_rule,
            next_step_override=next_step_override,
        )

    @staticmethod
    def _days_since_contacted(ctx: DealContext, contact: Contact) -> Optional[int]:
        """Days since the newest email with this contact, None if never contacted."""
        dates = [utc(e.sent_at) for e in ctx.emails if e.contact_id == contact.id and e.sent_at]
        if not dates:
            return None
        return days_since(max(dates), ctx.now)

    # ---------- health params ----------

    def health_param_rules(self, ctx: DealContext) -> List[ActionCandidate]:
        breakdown = ctx.health_breakdown
        if not breakdown or not breakdown.params:
            return []

        out: List[ActionCandidate] = []
        params = breakdown.params
        name = ctx.deal.name or "Deal"
        state = breakdown.state_of

        if state("1a") == "unknown":
            out.append(self._action(
                ctx,
                title=f"Get buyer to confirm close date for {name}",
                description="Close date credibility is unconfirmed: no buyer signal yet. Ask directly in your next call or email.",
                action_type=ActionType.EMAIL_SEND, priority="high", due_days=1,
                suggested_action='Ask: "Are you still on track to make a decision by [close date]? Is there a specific internal event driving that timeline?"',
                health_param="1a", source_rule=SourceRule.HEALTH_1A_UNKNOWN,
            ))

        if state("1b") == "confirmed":
            pushes = params["1b"].push_count or 1
            out.append(self._action(
                ctx,
                title=f"Address repeated close date slippage on {name}",
                description=f"Close date has slipped {_plural(pushes, 'time')}. Understand root cause and lock in a new credible date.",
                action_type=ActionType.MEETING_SCHEDULE, priority="high", due_days=1,
                suggested_action='Schedule a candid check-in. Ask: "What changed? What would need to be true for you to move forward by [new date]?"',
                health_param="1b", source_rule=SourceRule.HEALTH_1B_SLIPPED,
            ))

        if state("1c") == "unknown":
            out.append(self._action(
                ctx,
                title=f"Identify urgency driver for {name}",
                description="No buyer event linked to close date. Find what's creating urgency on their side.",
                action_type=ActionType.EMAIL_SEND, priority="medium", due_days=2,
                suggested_action='Ask: "Is there a budget cycle, board meeting, or contract renewal that makes your [date] timeline important?"',
                health_param="1c", source_rule=SourceRule.HEALTH_1C_UNKNOWN,
            ))

        if state("2a") in ("unknown", "absent"):
            out.append(self._action(
                ctx,
                title=f"Identify economic buyer for {name}",
                description="No economic buyer or decision maker tagged on this deal. Without them, close risk is high.",
                action_type=ActionType.TASK_COMPLETE, priority="high", due_days=2,
                suggested_action='Ask your champion: "Who has final sign-off authority for a purchase of this size? Have you worked with them before on similar decisions?"',
                health_param="2a", source_rule=SourceRule.HEALTH_2A_NO_BUYER,
            ))

        if state("2b") == "absent" and not ctx.derived.decision_makers:
            out.append(self._action(
                ctx,
                title=f"Get executive meeting scheduled for {name}",
                description="No exec-level meeting has been held. Deals without exec engagement close at significantly lower rates.",
                action_type=ActionType.MEETING_SCHEDULE, priority="high", due_days=3,
                suggested_action='Ask champion to facilitate an intro: "Would it be possible to include [Exec Name] in our next call for a 15-minute executive briefing?"',
                health_param="2b", source_rule=SourceRule.HEALTH_2B_NO_EXEC,
            ))

        if state("2c") == "absent":
            count = params["2c"].count or 0
            out.append(self._action(
                ctx,
                title=f"Expand stakeholder coverage on {name}",
                description=f"Only {_plural(count, 'stakeholder')} with meaningful roles. Single-threaded deals are high risk.",
                action_type=ActionType.TASK_COMPLETE, priority="medium", due_days=5,
                suggested_action="Map the buying committee with your champion. Identify who else needs to be involved: legal, IT, finance, end users.",
                health_param="2c", source_rule=SourceRule.HEALTH_2C_SINGLE_THREAD,
            ))

        if state("3a") == "unknown":
            out.append(self._action(
                ctx,
                title=f"Engage legal/procurement for {name}",
                description="Legal and procurement review not yet confirmed. For deals near close, this should be initiated now.",
                action_type=ActionType.EMAIL_SEND, priority="medium", due_days=3,
                suggested_action='Ask: "Has your procurement/legal team been looped in yet? What does their typical review process look like, and what do they need from us?"',
                health_param="3a", source_rule=SourceRule.HEALTH_3A_LEGAL,
            ))

        if state("3b") == "unknown":
            out.append(self._action(
                ctx,
                title=f"Initiate security/IT review for {name}",
                description="Security/IT review not yet confirmed. Proactively offering security documentation can accelerate this.",
                action_type=ActionType.EMAIL_SEND, priority="medium", due_days=3,
                suggested_action='Share your security pack/SOC2 report proactively. Ask: "Would it help if I sent our security documentation to your IT team directly?"',
                health_param="3b", source_rule=SourceRule.HEALTH_3B_SECURITY,
            ))

        if state("4a") == "confirmed":
            ratio = params["4a"].ratio
            out.append(self._action(
                ctx,
                title=f"Validate deal size realism for {name}",
                description=f"Deal value is {ratio}x the segment average. Confirm the scope justifies this size to avoid late-stage repricing.",
                action_type=ActionType.TASK_COMPLETE, priority="medium", due_days=5,
                suggested_action="Review the deal with your manager. Confirm the scope, user count, and pricing are clearly documented and buyer-confirmed.",
                health_param="4a", source_rule=SourceRule.HEALTH_4A_OVERSIZED,
            ))

        if state("4c") == "unknown":
            out.append(self._action(
                ctx,
                title=f"Get explicit scope sign-off for {name}",
                description="Scope has not been explicitly approved by the buyer. This is needed before legal/contract work begins.",
                action_type=ActionType.EMAIL_SEND, priority="medium", due_days=3,
                suggested_action='Send a scope summary email and ask for explicit confirmation: "Does this accurately reflect what we discussed? Any changes before we move to contracts?"',
                health_param="4c", source_rule=SourceRule.HEALTH_4C_SCOPE,
            ))

        if state("5a") == "confirmed":
            competitors = ", ".join(params["5a"].competitor_names())
            against = f" (competing against: {competitors})" if competitors else ""
            out.append(self._action(
                ctx,
                title=f"Develop competitive counter-strategy for {name}",
                description=f"Competitive deal confirmed{against}. Define your differentiation strategy.",
                action_type=ActionType.DOCUMENT_PREP, priority="high", due_days=2,
                suggested_action=f"Prepare a competitive battlecard highlighting your unique advantages vs {competitors or 'competitor'}. Share win stories from similar accounts.",
                health_param="5a", source_rule=SourceRule.HEALTH_5A_COMPETITIVE,
            ))

        if state("5b") == "confirmed":
            out.append(self._action(
                ctx,
                title=f"Address price sensitivity on {name}",
                description="Price sensitivity has been flagged. Build ROI case before it becomes a blocker.",
                action_type=ActionType.DOCUMENT_PREP, priority="high", due_days=2,
                suggested_action="Prepare a tailored ROI/business case document. Quantify time savings, risk reduction, or revenue impact specific to this account.",
                health_param="5b", source_rule=SourceRule.HEALTH_5B_PRICE,
            ))

        if state("5c") == "confirmed":
            out.append(self._action(
                ctx,
                title=f"Resolve discount approval for {name}",
                description="Discount approval is pending. Unresolved pricing exceptions stall deals.",
                action_type=ActionType.TASK_COMPLETE, priority="high", due_days=1,
                suggested_action="Escalate discount approval internally. Set a deadline and communicate the timeline to the buyer to maintain momentum.",
                health_param="5c", source_rule=SourceRule.HEALTH_5C_DISCOUNT,
            ))

        if state("6a") == "confirmed":
            days = params["6a"].days_since_last_meeting
            if days is None:
                days = ctx.derived.days_since_last_meeting
            if days is not None:
                out.append(self._action(
                    ctx,
                    title=f"Re-establish meeting cadence for {name}",
                    description=f"No meeting in {days} days. Deal momentum is stalling.",
                    action_type=ActionType.MEETING_SCHEDULE, priority="high", due_days=1,
                    suggested_action='Send a short email with 2-3 specific time slots: "I want to make sure we keep momentum. Can we find 30 minutes this week?"',
                    health_param="6a", source_rule=SourceRule.HEALTH_6A_NO_MEETING,
                ))

        if state("6b") == "confirmed":
            avg_hours = params["6b"].avg_hours
            out.append(self._action(
                ctx,
                title=f"Re-engage unresponsive contact on {name}",
                description=f"Average email response time is {avg_hours}h, significantly above normal. Engagement may be dropping.",
                action_type=ActionType.EMAIL_SEND, priority="medium", due_days=1,
                suggested_action='Try a different channel (phone/LinkedIn). Keep the message short and specific: "Quick question: are you still the right person to move this forward?"',
                health_param="6b", source_rule=SourceRule.HEALTH_6B_SLOW_RESPONSE,
            ))

        return out

    # ---------- stage and timing ----------

    def stage_rules(self, ctx: DealContext) -> List[ActionCandidate]:
        out: List[ActionCandidate] = []
        deal, derived = ctx.deal, ctx.derived
        name = deal.name

        if derived.is_stagnant:
            out.append(self._action(
                ctx,
                title=f"Re-engage stagnant deal: {name}",
                description=f"No stage progression in {derived.days_in_stage} days.",
                action_type=ActionType.FOLLOW_UP, priority="high", due_days=0,
                suggested_action="Send a re-engagement email. Reference something relevant (new feature, industry news, their recent announcement) to make it timely.",
                source_rule=SourceRule.STAGNANT_DEAL,
            ))

        if derived.closing_imminently:
            out.append(self._action(
                ctx,
                title=f"{name} closes in {_plural(derived.days_until_close, 'day')}: final checklist",
                description="Close date is imminent. Verify all steps are complete.",
                action_type=ActionType.TASK_COMPLETE, priority="high", due_days=0,
                suggested_action="Confirm: contract ready, decision makers aligned, procurement informed, implementation date agreed, success criteria documented.",
                source_rule=SourceRule.CLOSE_IMMINENT,
            ))

        if derived.is_past_close:
            overdue = abs(derived.days_until_close)
            out.append(self._action(
                ctx,
                title=f"{name} is {_plural(overdue, 'day')} past close date",
                description="Deal has passed its close date without closing. Update or escalate.",
                action_type=ActionType.TASK_COMPLETE, priority="high", due_days=0,
                suggested_action="Update close date with new forecast. If no clear path forward, discuss internally whether to re-qualify or close as lost.",
                source_rule=SourceRule.PAST_CLOSE_DATE,
            ))

        since_meeting = derived.days_since_last_meeting
        if derived.is_high_value and since_meeting is not None and since_meeting > 7:
            out.append(self._action(
                ctx,
                title=f"High-value deal {name} needs executive touchpoint",
                description=f"${deal.value:,.0f} deal with no meeting in {since_meeting} days.",
                action_type=ActionType.MEETING_SCHEDULE, priority="high", due_days=2,
                suggested_action="Schedule an executive briefing. For deals of this size, regular exec-to-exec contact is critical.",
                source_rule=SourceRule.HIGH_VALUE_NO_MEETING,
            ))

        if deal.stage == "qualified" and not derived.completed_meetings:
            out.append(self._action(
                ctx,
                title=f"Schedule discovery call for {name}",
                description="Qualified deal with no discovery meeting yet.",
                action_type=ActionType.MEETING_SCHEDULE, priority="high", due_days=1,
                suggested_action="Book a 45-minute discovery call. Prepare MEDDIC questions: Metrics, Economic Buyer, Decision Criteria, Decision Process, Identify Pain, Champion.",
                source_rule=SourceRule.STAGE_QUALIFIED_NO_DISCOVERY,
            ))

        if deal.stage == "demo" and not any("demo" in (m.meeting_type or "") for m in derived.completed_meetings):
            out.append(self._action(
                ctx,
                title=f"Schedule product demo for {name}",
                description="Deal is in demo stage but no demo meeting recorded.",
                action_type=ActionType.MEETING_SCHEDULE, priority="high", due_days=2,
                suggested_action="Customise the demo to their stated use cases. Confirm attendees include at least one decision maker.",
                source_rule=SourceRule.STAGE_DEMO_NO_DEMO,
            ))

        since_email = derived.days_since_last_email
        if deal.stage == "proposal" and since_email is not None and since_email > 3:
            out.append(self._action(
                ctx,
                title=f"Follow up on proposal for {name}",
                description=f"Proposal stage with no email contact in {since_email} days.",
                action_type=ActionType.EMAIL_SEND,
                priority="high" if since_email > 7 else "medium",
                due_days=0,
                suggested_action='Send a short follow-up: "Just checking in on the proposal. Do you have any questions, or is there anything I can clarify?"',
                source_rule=SourceRule.STAGE_PROPOSAL_FOLLOWUP,
            ))

        if deal.stage == "negotiation":
            out.append(self._action(
                ctx,
                title=f"Check negotiation blockers for {name}",
                description="Deal is in negotiation. Identify and address any remaining blockers.",
                action_type=ActionType.TASK_COMPLETE, priority="high", due_days=1,
                suggested_action="Review: Are there open pricing, legal, or scope issues? Who needs to approve? What is their internal process timeline?",
                source_rule=SourceRule.STAGE_NEGOTIATION_BLOCKERS,
            ))

        return out

    # ---------- contacts ----------

    def contact_rules(self, ctx: DealContext) -> List[ActionCandidate]:
        deal = ctx.deal
        if not ctx.contacts:
            return [self._action(
                ctx,
                title=f"Add contacts to deal: {deal.name}",
                description="This deal has no contacts. Actions and health scoring will be severely limited without contact data.",
                action_type=ActionType.TASK_COMPLETE, priority="high", due_days=0,
                suggested_action="Add at least one contact with a role (Champion, Decision Maker, or Influencer) to this deal.",
                source_rule=SourceRule.NO_CONTACTS,
            )]

        out: List[ActionCandidate] = []
        for contact in ctx.derived.decision_makers:
            days = self._days_since_contacted(ctx, contact)
            if days is None or days > DECISION_MAKER_STALE_DAYS:
                out.append(self._action(
                    ctx,
                    title=f"Touch base with {contact.full_name} (Decision Maker)",
                    description=f"Key decision maker, no contact in {'over 30' if days is None else days} days.",
                    action_type=ActionType.EMAIL_SEND, priority="high", due_days=1,
                    contact_id=contact.id,
                    suggested_action="Send a personalised update. Reference their stated priorities and show how the deal addresses them.",
                    source_rule=SourceRule.DECISION_MAKER_NO_CONTACT,
                ))

        for contact in ctx.derived.champions:
            days = self._days_since_contacted(ctx, contact)
            if days is None or days > CHAMPION_STALE_DAYS:
                out.append(self._action(
                    ctx,
                    title=f"Nurture champion {contact.full_name}",
                    description="Internal champion. Keep them informed and equipped to advocate internally.",
                    action_type=ActionType.EMAIL_SEND, priority="medium", due_days=2,
                    contact_id=contact.id,
                    suggested_action="Share ROI data, reference stories, or talk tracks to help them justify the decision internally.",
                    source_rule=SourceRule.CHAMPION_NURTURE,
                ))
        return out

    # ---------- meetings ----------

    def meeting_rules(self, ctx: DealContext) -> List[ActionCandidate]:
        out: List[ActionCandidate] = []

        for meeting in ctx.derived.upcoming_meetings:
            if days_until(meeting.start_time, ctx.now) <= 1:
                out.append(self._action(
                    ctx,
                    title=f"Prepare for: {meeting.title or 'Upcoming meeting'}",
                    description="Meeting tomorrow. Prepare agenda and review deal history.",
                    action_type=ActionType.TASK_COMPLETE, priority="high", due_days=0,
                    suggested_action="Review last email thread, prepare 3 agenda items, confirm attendees, and know your ask/next step before entering the call.",
                    source_rule=SourceRule.MEETING_PREP,
                ))

        for meeting in ctx.derived.completed_meetings:
            started = utc(meeting.start_time)
            followed_up = any(e.sent_at and utc(e.sent_at) > started for e in ctx.derived.sent_emails)
            if days_since(started, ctx.now) <= MEETING_FOLLOWUP_WINDOW_DAYS and not followed_up:
                out.append(self._action(
                    ctx,
                    title=f"Send follow-up for: {meeting.title or 'Recent meeting'}",
                    description="Meeting completed recently. Send recap with next steps.",
                    action_type=ActionType.EMAIL_SEND, priority="high", due_days=0,
                    suggested_action="Email recap: key decisions made, open items with owners, agreed next steps and dates.",
                    source_rule=SourceRule.MEETING_FOLLOWUP,
                ))
        return out

    # ---------- emails ----------

    def email_rules(self, ctx: DealContext) -> List[ActionCandidate]:
        out: List[ActionCandidate] = []
        for email in ctx.derived.unanswered_emails[:MAX_UNANSWERED_FOLLOWUPS]:
            days = days_since(email.sent_at, ctx.now)
            escalate = days > UNANSWERED_ESCALATE_DAYS
            if escalate:
                suggestion = 'Call them directly. Keep it short: "Just following up, is this still relevant for you?"'
            else:
                suggestion = 'Reply on the same thread with a short nudge: "Just following up, is this still relevant for you?"'
            out.append(self._action(
                ctx,
                title=f'Follow up on unanswered email: "{(email.subject or "")[:50]}"',
                description=f"Email sent {days} days ago with no reply. Try a different approach.",
                action_type=ActionType.FOLLOW_UP,
                priority="high" if escalate else "medium",
                due_days=0,
                contact_id=email.contact_id,
                suggested_action=suggestion,
                source_rule=SourceRule.UNANSWERED_EMAIL,
                next_step_override=NextStep.CALL if escalate else NextStep.EMAIL,
            ))
        return out

    # ---------- files ----------

    def file_rules(self, ctx: DealContext) -> List[ActionCandidate]:
        out: List[ActionCandidate] = []
        deal = ctx.deal

        if not ctx.files and deal.stage in ACTIVE_FILE_STAGES:
            out.append(self._action(
                ctx,
                title=f"Upload relevant documents for {deal.name}",
                description="No files uploaded for this deal. Proposals, contracts, and meeting notes help AI generate better actions.",
                action_type=ActionType.DOCUMENT_PREP, priority="medium", due_days=3,
                suggested_action="Upload the proposal, any email attachments, or meeting transcripts to enable AI-assisted analysis.",
                source_rule=SourceRule.NO_FILES,
            ))

        for f in ctx.derived.failed_files:
            out.append(self._action(
                ctx,
                title=f"Retry failed file import: {f.file_name}",
                description=f'File "{f.file_name}" failed to process. It may contain signals affecting deal health.',
                action_type=ActionType.TASK_COMPLETE, priority="low", due_days=5,
                suggested_action=f'Re-import "{f.file_name}" from the Files view. If it keeps failing, check the file format.',
                source_rule=SourceRule.FAILED_FILE,
            ))

        if deal.stage in PROPOSAL_STAGES:
            has_proposal = any(
                f.category == "document" and PROPOSAL_DOC.search(f.file_name or "")
                for f in ctx.files
            )
            if not has_proposal:
                out.append(self._action(
                    ctx,
                    title=f"Prepare proposal document for {deal.name}",
                    description=f"Deal is in {deal.stage} stage but no proposal document found.",
                    action_type=ActionType.DOCUMENT_PREP, priority="high", due_days=2,
                    suggested_action="Create and upload a tailored proposal. Include scope, pricing, timeline, ROI summary, and implementation plan.",
                    source_rule=SourceRule.NO_PROPOSAL_DOC,
                ))
        return out

    # ---------- playbook ----------

    def playbook_rules(self, ctx: DealContext) -> List[ActionCandidate]:
        stage = ctx.deal.stage
        done = {normalise_title(t) for t in ctx.completed_action_titles}
        out: List[ActionCandidate] = []
        for text in ctx.playbook_stage_actions:
            if not text or normalise_title(text) in done:
                continue
            action_type = pb.classify_action_type(text)
            out.append(self._action(
                ctx,
                title=text,
                description=f"Playbook action for {stage} stage",
                action_type=action_type,
                priority=pb.suggest_priority(stage, action_type),
                due_days=pb.suggest_due_days(stage, action_type),
                keywords=pb.extract_keywords(text),
                requires_external_evidence=pb.requires_external_evidence(action_type, text),
                deal_stage=stage,
                source="playbook",
                source_rule=SourceRule.PLAYBOOK,
            ))
        return out
