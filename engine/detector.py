# file: engine/detector.py
"""
Completion detection: decides from a sent email or a held meeting whether open
actions are done.

  broad scan      detect_from_email / detect_from_meeting score every open action
                  on the evidence's deal and complete or suggest per thresholds
  targeted check  detect_from_email_for_action runs an AI content check for the
                  action the email was composed from
  suggestions     accept_suggestion / dismiss_suggestion resolve pending ones

Store writes are conditional (complete only if open, resolve only if pending), so
concurrent scans of the same deal cannot complete an action twice.
"""
from __future__ import annotations
import logging
from typing import Awaitable, Callable, Optional, Union

from app.config import get_settings
from app.errors import ExternalServiceFailure, NotFound, StoreError
from app.schema import (
    Action, ActionType, DetectionConfig, DetectionOutcome, DetectionReport, Email,
    Id, MatchResult, Meeting,
)
from app.tools.llm import ollama_generate_json

log = logging.getLogger("detector")

# Calibration constants
RULES_COMPLETION_THRESHOLD = 60
TARGETED_AI_THRESHOLD = 75
HYBRID_LOW = 40
HYBRID_HIGH = 90
NO_SUGGESTED_ACTION_CONFIDENCE = 80
AI_OUTAGE_CONFIDENCE = 70
EMAIL_SENT_CONFIDENCE = 100

KEYWORD_WEIGHT = 30
ATTACHMENT_WEIGHT = 20
EXTERNAL_WEIGHT = 20
TYPE_MATCH_WEIGHT = 15
NEGATION_PENALTY = 15
NO_NEGATION_BONUS = 5

NEGATION_WORDS = ("discuss", "planning", "thinking about", "considering", "not yet", "prepare to")

AI_OUTAGE_REASONING = "AI check unavailable: email send accepted as completion signal."

Evidence = Union[Email, Meeting]
LLMCall = Callable[..., Awaitable[dict]]

CONTENT_CHECK_PROMPT = """You are evaluating whether a sent email fulfils a specific sales action.

ACTION TITLE: {title}
ACTION INTENT (what the email was supposed to achieve):
"{intent}"

SENT EMAIL:
Subject: {subject}
Body:
{body}

---
Does this email meaningfully address the intent of the action?

Reply ONLY with valid JSON:
{{"confidence": <0-100>, "match": <true|false>, "reasoning": "<one sentence explaining your score>"}}

Scoring guide:
- 90-100: Email clearly and specifically addresses the action intent
- 70-89:  Email broadly addresses the intent but may be missing specifics
- 40-69:  Email is related but doesn't clearly fulfil the action
- 0-39:   Email does not address the action intent"""

EVIDENCE_MATCH_PROMPT = """You are checking whether a piece of sales activity completes an open action.

ACTION: {title}
TYPE: {action_type}
DESCRIPTION: {description}
INTENT: {intent}

{evidence_type} EVIDENCE:
{evidence}

Reply ONLY with valid JSON:
{{"confidence": <0-100>, "reasoning": "<one sentence>"}}

Score 90-100 only if the activity clearly completes the action; 0-39 if it is unrelated
or only talks about doing it later."""


def _clamp(value) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return 0


def _reply_confidence(data) -> int:
    """Confidence from an LLM reply; a reply without a numeric confidence is a failure."""
    if not isinstance(data, dict):
        raise ExternalServiceFailure(f"Unexpected LLM reply: {data!r}"[:200])
    value = data.get("confidence")
    try:
        if isinstance(value, bool):
            raise TypeError(value)
        float(value)
    except (TypeError, ValueError):
        raise ExternalServiceFailure(f"LLM reply has no numeric confidence: {data!r}"[:200])
    return _clamp(value)


def searchable_text(evidence: Evidence, evidence_type: str) -> str:
    if evidence_type == "email":
        return f"{evidence.subject or ''} {evidence.body or ''}".lower()
    return f"{evidence.title or ''} {evidence.description or ''}".lower()


def extract_evidence(evidence: Evidence, evidence_type: str) -> str:
    """Short human-readable snippet of the evidence."""
    if evidence_type == "email":
        snippet = (evidence.body or "")[:100]
        return f"{evidence.subject or ''} - {snippet}{'...' if len(snippet) == 100 else ''}"
    if evidence_type == "meeting":
        return evidence.title or ""
    return ""


def analyze_with_rules(action: Action, evidence: Evidence, evidence_type: str) -> MatchResult:
    score = 0.0
    flags = []
    text = searchable_text(evidence, evidence_type)

    if action.keywords:
        matches = [kw for kw in action.keywords if kw.lower() in text]
        score += KEYWORD_WEIGHT * (len(matches) / len(action.keywords))

    is_email = evidence_type == "email"
    if is_email and action.action_type == ActionType.EMAIL_SEND.value and evidence.has_attachments:
        score += ATTACHMENT_WEIGHT

    if action.requires_external_evidence and is_email:
        if evidence.direction == "sent":
            score += EXTERNAL_WEIGHT
        else:
            flags.append("internal_only")
            score -= EXTERNAL_WEIGHT

    if (action.action_type == ActionType.EMAIL_SEND.value and is_email) or \
            (action.action_type == ActionType.MEETING_SCHEDULE.value and evidence_type == "meeting"):
        score += TYPE_MATCH_WEIGHT

    if any(w in text for w in NEGATION_WORDS):
        flags.append("negation_detected")
        score -= NEGATION_PENALTY
    else:
        score += NO_NEGATION_BONUS

    confidence = _clamp(score)
    return MatchResult(
        completes_action=confidence >= RULES_COMPLETION_THRESHOLD,
        confidence=confidence,
        reasoning=f"Rules-based analysis: {confidence}% confidence",
        evidence=extract_evidence(evidence, evidence_type),
        flags=flags,
        detection_source="rules",
    )


class CompletionDetector:
    """Infers action completion from emails and meetings"""

    def __init__(self, store_registry, llm: Optional[LLMCall] = None):
        self.store = store_registry.get_store_client()
        self.llm = llm or ollama_generate_json
        self.settings = get_settings()

    # ---------- scoring ----------

    def analyze_with_rules(self, action: Action, evidence: Evidence, evidence_type: str) -> MatchResult:
        return analyze_with_rules(action, evidence, evidence_type)

    async def analyze_with_ai(self, action: Action, evidence: Evidence, evidence_type: str) -> MatchResult:
        """LLM judgement of evidence vs action; degrades to the rules result if the LLM fails."""
        if evidence_type == "email":
            body = f"Subject: {evidence.subject or '(no subject)'}\nDirection: {evidence.direction}\n{(evidence.body or '')[:1500]}"
        else:
            body = f"Title: {evidence.title or ''}\nType: {evidence.meeting_type or ''}\n{(evidence.description or '')[:1000]}\n{(evidence.notes or '')[:1000]}"
        prompt = EVIDENCE_MATCH_PROMPT.format(
            title=action.title,
            action_type=action.action_type or "manual",
            description=action.description or "",
            intent=action.suggested_action or "",
            evidence_type=evidence_type.upper(),
            evidence=body,
        )
        try:
            data = await self.llm(prompt)
            confidence = _reply_confidence(data)
        except Exception as e:
            log.warning("AI match for action %s failed, using rules: %s", action.id, e)
            fallback = analyze_with_rules(action, evidence, evidence_type)
            return fallback.model_copy(update={"detection_source": "rules_fallback"})

        return MatchResult(
            completes_action=confidence >= RULES_COMPLETION_THRESHOLD,
            confidence=confidence,
            reasoning=str(data.get("reasoning") or f"AI analysis: {confidence}% confidence"),
            evidence=extract_evidence(evidence, evidence_type),
            detection_source="ai",
        )

    async def analyze(self, action: Action, evidence: Evidence, evidence_type: str,
                      config: DetectionConfig) -> Optional[MatchResult]:
        mode = config.detection_mode
        if mode == "rules_only":
            return analyze_with_rules(action, evidence, evidence_type)
        if mode == "ai_only":
            return await self.analyze_with_ai(action, evidence, evidence_type)
        if mode == "hybrid":
            rules = analyze_with_rules(action, evidence, evidence_type)
            if rules.confidence < HYBRID_LOW or rules.confidence > HYBRID_HIGH:
                return rules
            return await self.analyze_with_ai(action, evidence, evidence_type)
        return None

    async def check_email_content(self, email: Email, action: Action) -> MatchResult:
        """AI check that a sent email fulfils the action's suggested_action text."""
        if not action.suggested_action:
            return MatchResult(
                completes_action=True,
                confidence=NO_SUGGESTED_ACTION_CONFIDENCE,
                reasoning="No specific content requirement, email sent is sufficient.",
                evidence=email.subject or "",
                detection_source="ai_content_check",
            )

        prompt = CONTENT_CHECK_PROMPT.format(
            title=action.title,
            intent=action.suggested_action,
            subject=email.subject or "(no subject)",
            body=(email.body or "")[:1500],
        )
        try:
            data = await self.llm(prompt)
            confidence = _reply_confidence(data)
        except Exception as e:
            log.warning("AI content check failed for action %s, defaulting to %d%%: %s",
                        action.id, AI_OUTAGE_CONFIDENCE, e)
            return MatchResult(
                completes_action=True,
                confidence=AI_OUTAGE_CONFIDENCE,
                reasoning=AI_OUTAGE_REASONING,
                evidence=email.subject or "",
                detection_source="ai_content_check",
                fallback=True,
            )

        return MatchResult(
            completes_action=confidence >= TARGETED_AI_THRESHOLD,
            confidence=confidence,
            reasoning=str(data.get("reasoning") or "AI content check completed"),
            evidence=extract_evidence(email, "email"),
            detection_source="ai_content_check",
        )

    # ---------- config ----------

    async def load_config(self, user_id: Id, org_id: Id) -> DetectionConfig:
        try:
            row = await self.store.get_detection_config(user_id=user_id, org_id=org_id)
        except StoreError as e:
            log.warning("detection config lookup failed for org=%s user=%s, using defaults: %s", org_id, user_id, e)
            row = None
        return DetectionConfig.from_row(row, self.settings)

    # ---------- store effects ----------

    async def _complete(self, action: Action, result: MatchResult, user_id: Id, org_id: Id,
                        auto_completed: bool = True) -> str:
        completed = await self.store.complete_action(
            action.id, user_id=user_id, org_id=org_id,
            auto_completed=auto_completed,
            confidence=result.confidence,
            evidence={
                "reasoning": result.reasoning,
                "evidence": result.evidence,
                "flags": result.flags,
                "source": result.detection_source,
            },
        )
        if completed:
            log.info("Auto-completed action %s (%d%%, %s)", action.id, result.confidence, result.detection_source)
            return "completed"
        log.info("Action %s was already completed", action.id)
        return "already_completed"

    async def _suggest(self, action: Action, evidence_id: Id, evidence_type: str,
                       result: MatchResult, user_id: Id, org_id: Id) -> str:
        created = await self.store.create_suggestion({
            "action_id": action.id,
            "evidence_type": evidence_type,
            "evidence_id": evidence_id,
            "evidence_snippet": result.evidence,
            "confidence": result.confidence,
            "reasoning": result.reasoning,
            "detection_source": result.detection_source,
        }, user_id=user_id, org_id=org_id)
        if created and created.get("created"):
            log.info("Suggestion created for action %s (%d%%)", action.id, result.confidence)
            return "suggested"
        reason = (created or {}).get("reason") or "already_completed"
        log.info("No suggestion for action %s: %s", action.id, reason)
        return reason

    # ---------- broad scan ----------

    async def _scan(self, evidence_type: str, evidence_id: Id, user_id: Id, org_id: Id) -> DetectionReport:
        report = DetectionReport(trigger=evidence_type, evidence_id=evidence_id)
        try:
            config = await self.load_config(user_id, org_id)
            if not config.channel_enabled(evidence_type):
                report.skipped_reason = "detection_disabled"
                return report

            if evidence_type == "email":
                evidence = await self.store.get_email(evidence_id, user_id=user_id, org_id=org_id)
            else:
                evidence = await self.store.get_meeting(evidence_id, user_id=user_id, org_id=org_id)
            if evidence is None:
                report.skipped_reason = f"{evidence_type}_not_found"
                return report
            if evidence.deal_id is None:
                report.skipped_reason = "no_deal"
                return report

            actions = await self.store.list_actions(
                evidence.deal_id, user_id=user_id, org_id=org_id, completed=False,
            )
            for action in actions:
                result = await self.analyze(action, evidence, evidence_type, config)
                if result is None:
                    continue
                if result.confidence < config.confidence_threshold:
                    outcome = "below_threshold"
                elif result.confidence >= config.auto_complete_threshold:
                    outcome = await self._complete(action, result, user_id, org_id)
                else:
                    outcome = await self._suggest(action, evidence.id, evidence_type, result, user_id, org_id)
                report.outcomes.append(DetectionOutcome(
                    action_id=action.id,
                    outcome=outcome,
                    confidence=result.confidence,
                    detection_source=result.detection_source,
                ))
        except Exception as e:
            log.error("detect_from_%s failed (id=%s org=%s user=%s): %s",
                      evidence_type, evidence_id, org_id, user_id, e, exc_info=True)
            report.skipped_reason = "error"
        return report

    async def detect_from_email(self, email_id: Id, user_id: Id, org_id: Id) -> DetectionReport:
        return await self._scan("email", email_id, user_id, org_id)

    async def detect_from_meeting(self, meeting_id: Id, user_id: Id, org_id: Id) -> DetectionReport:
        return await self._scan("meeting", meeting_id, user_id, org_id)

    # ---------- targeted check ----------

    async def detect_from_email_for_action(self, email_id: Id, user_id: Id, action_id: Id,
                                           org_id: Id) -> Optional[DetectionOutcome]:
        """
        The email was composed from this action's card. With detection off, sending
        counts as doing the work. Otherwise an AI content check decides between
        auto-completing and leaving a suggestion for the user.

        None when the email or action does not exist in scope; an outcome of
        "skipped" with a skipped_reason for everything else that stops the check.
        """
        try:
            config = await self.load_config(user_id, org_id)
            email = await self.store.get_email(email_id, user_id=user_id, org_id=org_id)
            action = await self.store.get_action(action_id, user_id=user_id, org_id=org_id)
            if email is None or action is None:
                log.info("Targeted check skipped: email=%s action=%s not found", email_id, action_id)
                return None
            if email.deal_id is not None and str(email.deal_id) != str(action.deal_id):
                log.info("Targeted check skipped: email %s is on deal %s, action %s on deal %s",
                         email.id, email.deal_id, action.id, action.deal_id)
                return DetectionOutcome(action_id=action.id, outcome="skipped", confidence=0,
                                        detection_source="none", skipped_reason="deal_mismatch")

            if not config.channel_enabled("email"):
                completed = await self.store.complete_action(
                    action.id, user_id=user_id, org_id=org_id, auto_completed=False,
                    confidence=EMAIL_SENT_CONFIDENCE,
                    evidence={"source": "email_sent", "subject": email.subject, "email_id": email.id},
                )
                log.info("Action %s marked complete (email sent, detection off)", action.id)
                return DetectionOutcome(
                    action_id=action.id,
                    outcome="completed" if completed else "already_completed",
                    confidence=EMAIL_SENT_CONFIDENCE,
                    detection_source="email_sent",
                )

            result = await self.check_email_content(email, action)
            if result.confidence >= TARGETED_AI_THRESHOLD or result.fallback:
                outcome = await self._complete(action, result, user_id, org_id)
            else:
                result = result.model_copy(update={
                    "reasoning": f"Email sent but content match was {result.confidence}%, please confirm this completes the action.",
                })
                outcome = await self._suggest(action, email.id, "email", result, user_id, org_id)
            return DetectionOutcome(
                action_id=action.id,
                outcome=outcome,
                confidence=result.confidence,
                detection_source=result.detection_source,
            )
        except Exception as e:
            log.error("detect_from_email_for_action failed (action=%s email=%s): %s",
                      action_id, email_id, e, exc_info=True)
            return DetectionOutcome(action_id=action_id, outcome="skipped", confidence=0,
                                    detection_source="none", skipped_reason="error")

    # ---------- suggestions ----------

    async def accept_suggestion(self, suggestion_id: Id, user_id: Id, org_id: Id) -> bool:
        """Accept a pending suggestion and complete its action. False if it was no longer pending."""
        suggestion = await self.store.get_suggestion(suggestion_id, user_id=user_id, org_id=org_id)
        if suggestion is None:
            raise NotFound(f"Suggestion {suggestion_id} not found")
        # leave the suggestion pending if there is no action left to complete
        if await self.store.get_action(suggestion.action_id, user_id=user_id, org_id=org_id) is None:
            raise NotFound(f"Action {suggestion.action_id} not found")

        resolved = await self.store.resolve_suggestion(suggestion_id, "accepted", user_id=user_id, org_id=org_id)
        if not resolved or not resolved.get("resolved"):
            log.info("Suggestion %s already resolved", suggestion_id)
            return False

        completed = await self.store.complete_action(
            suggestion.action_id, user_id=user_id, org_id=org_id,
            auto_completed=False,
            confidence=suggestion.confidence,
            evidence={
                "type": suggestion.evidence_type,
                "id": suggestion.evidence_id,
                "snippet": suggestion.evidence_snippet,
                "source": "user_accepted_suggestion",
            },
        )
        if completed is None:
            raise NotFound(f"Action {suggestion.action_id} not found")
        log.info("Suggestion %s accepted, action %s completed", suggestion_id, suggestion.action_id)
        return True

    async def dismiss_suggestion(self, suggestion_id: Id, user_id: Id, org_id: Id) -> bool:
        resolved = await self.store.resolve_suggestion(suggestion_id, "dismissed", user_id=user_id, org_id=org_id)
        if resolved is None:
            raise NotFound(f"Suggestion {suggestion_id} not found")
        if resolved.get("resolved"):
            log.info("Suggestion %s dismissed", suggestion_id)
        return bool(resolved.get("resolved"))
