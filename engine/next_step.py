# file: engine/next_step.py
"""
Channel assignment for action candidates.

Order: the rule's own override (channel depends on a runtime value), then the
static table keyed by source rule, then a fallback keyed by action type.
"""
from __future__ import annotations
from typing import Dict, List, Optional

from app.schema import ActionCandidate, ActionType, NextStep, SourceRule

# None means the channel comes from the candidate itself (override or action type).
RULE_NEXT_STEPS: Dict[SourceRule, Optional[NextStep]] = {
    SourceRule.HEALTH_1A_UNKNOWN: NextStep.EMAIL,
    SourceRule.HEALTH_1B_SLIPPED: NextStep.CALL,
    SourceRule.HEALTH_1C_UNKNOWN: NextStep.EMAIL,
    SourceRule.HEALTH_2A_NO_BUYER: NextStep.CALL,
    SourceRule.HEALTH_2B_NO_EXEC: NextStep.EMAIL,
    SourceRule.HEALTH_2C_SINGLE_THREAD: NextStep.INTERNAL_TASK,
    SourceRule.HEALTH_3A_LEGAL: NextStep.EMAIL,
    SourceRule.HEALTH_3B_SECURITY: NextStep.EMAIL,
    SourceRule.HEALTH_4A_OVERSIZED: NextStep.INTERNAL_TASK,
    SourceRule.HEALTH_4C_SCOPE: NextStep.EMAIL,
    SourceRule.HEALTH_5A_COMPETITIVE: NextStep.DOCUMENT,
    SourceRule.HEALTH_5B_PRICE: NextStep.DOCUMENT,
    SourceRule.HEALTH_5C_DISCOUNT: NextStep.SLACK,
    SourceRule.HEALTH_6A_NO_MEETING: NextStep.EMAIL,
    SourceRule.HEALTH_6B_SLOW_RESPONSE: NextStep.LINKEDIN,
    SourceRule.STAGNANT_DEAL: NextStep.EMAIL,
    SourceRule.CLOSE_IMMINENT: NextStep.INTERNAL_TASK,
    SourceRule.PAST_CLOSE_DATE: NextStep.INTERNAL_TASK,
    SourceRule.HIGH_VALUE_NO_MEETING: NextStep.CALL,
    SourceRule.STAGE_QUALIFIED_NO_DISCOVERY: NextStep.EMAIL,
    SourceRule.STAGE_DEMO_NO_DEMO: NextStep.EMAIL,
    SourceRule.STAGE_PROPOSAL_FOLLOWUP: NextStep.EMAIL,
    SourceRule.STAGE_NEGOTIATION_BLOCKERS: NextStep.INTERNAL_TASK,
    SourceRule.NO_CONTACTS: NextStep.INTERNAL_TASK,
    SourceRule.DECISION_MAKER_NO_CONTACT: NextStep.EMAIL,
    SourceRule.CHAMPION_NURTURE: NextStep.EMAIL,
    SourceRule.MEETING_PREP: NextStep.INTERNAL_TASK,
    SourceRule.MEETING_FOLLOWUP: NextStep.EMAIL,
    SourceRule.UNANSWERED_EMAIL: None,
    SourceRule.NO_FILES: NextStep.INTERNAL_TASK,
    SourceRule.FAILED_FILE: NextStep.INTERNAL_TASK,
    SourceRule.NO_PROPOSAL_DOC: NextStep.DOCUMENT,
    SourceRule.PLAYBOOK: None,
    SourceRule.AI_ENHANCER: None,
    SourceRule.EMAIL_ANALYSIS: None,
}

_unmapped = [rule.value for rule in SourceRule if rule not in RULE_NEXT_STEPS]
if _unmapped:
    raise RuntimeError(f"Source rules without a next-step mapping: {', '.join(_unmapped)}")

ACTION_TYPE_NEXT_STEPS: Dict[ActionType, NextStep] = {
    ActionType.EMAIL_SEND: NextStep.EMAIL,
    ActionType.MEETING_SCHEDULE: NextStep.EMAIL,
    ActionType.FOLLOW_UP: NextStep.EMAIL,
    ActionType.DOCUMENT_PREP: NextStep.DOCUMENT,
    ActionType.TASK_COMPLETE: NextStep.INTERNAL_TASK,
    ActionType.REVIEW: NextStep.INTERNAL_TASK,
}


def resolve_next_step(candidate: ActionCandidate) -> NextStep:
    if candidate.next_step_override is not None:
        return candidate.next_step_override
    mapped = RULE_NEXT_STEPS[candidate.source_rule]
    if mapped is not None:
        return mapped
    return ACTION_TYPE_NEXT_STEPS.get(candidate.action_type, NextStep.EMAIL)


def assign_next_steps(candidates: List[ActionCandidate]) -> List[ActionCandidate]:
    """Return copies of the candidates with next_step filled in."""
    return [c.model_copy(update={"next_step": resolve_next_step(c)}) for c in candidates]
