# file: engine/playbook.py
"""
Helpers that turn a free-text playbook key action into a typed action:
type classification, keyword extraction, evidence requirement, due days and priority.
"""
from __future__ import annotations
import re
from typing import List, Optional

from app.schema import ActionType

# Checked in this order; first bucket with a hit wins.
ACTION_TYPE_PATTERNS = (
    (ActionType.EMAIL_SEND, ("send", "email", "forward", "share", "provide", "deliver", "transmit", "distribute")),
    (ActionType.MEETING_SCHEDULE, ("schedule", "book", "set up", "arrange", "meeting", "demo", "call", "presentation", "walkthrough")),
    (ActionType.DOCUMENT_PREP, ("prepare", "create", "build", "draft", "customize", "develop", "design", "tailor")),
    (ActionType.TASK_COMPLETE, ("complete", "finish", "approve", "confirm", "review", "validate", "verify", "check")),
)

KEYWORD_CANDIDATES = (
    "deck", "presentation", "slides", "proposal", "contract",
    "quote", "pricing", "roi", "calculator", "msa", "sow",
    "demo", "demonstration", "walkthrough", "review", "call",
    "discovery", "qbr", "kickoff",
    "security", "legal", "procurement", "technical", "executive",
    "send", "schedule", "customize", "prepare", "follow up",
    "invite", "share", "deliver",
)

STOPWORDS = {"the", "and", "for", "with", "this", "that", "from"}

LATE_STAGE_MARKERS = ("proposal", "negotiation", "closing", "verbal")

URGENT_DUE_DAYS = {
    ActionType.EMAIL_SEND: 1, ActionType.MEETING_SCHEDULE: 2,
    ActionType.DOCUMENT_PREP: 2, ActionType.TASK_COMPLETE: 3, ActionType.MANUAL: 5,
}
NORMAL_DUE_DAYS = {
    ActionType.EMAIL_SEND: 2, ActionType.MEETING_SCHEDULE: 3,
    ActionType.DOCUMENT_PREP: 3, ActionType.TASK_COMPLETE: 5, ActionType.MANUAL: 7,
}

_NON_WORD = re.compile(r"[^\w\s]")


def classify_action_type(text: str) -> ActionType:
    lower = (text or "").lower()
    for action_type, words in ACTION_TYPE_PATTERNS:
        if any(w in lower for w in words):
            return action_type
    return ActionType.MANUAL


def extract_keywords(text: str) -> List[str]:
    """Fixed domain keywords found in the text, then its first three content words; at most 5."""
    lower = (text or "").lower()
    found = [kw for kw in KEYWORD_CANDIDATES if kw in lower]
    words = [
        w for w in _NON_WORD.sub("", lower).split()
        if len(w) > 3 and w not in STOPWORDS
    ]
    merged: List[str] = []
    for kw in found + words[:3]:
        if kw not in merged:
            merged.append(kw)
    return merged[:5]


def requires_external_evidence(action_type: ActionType, text: str) -> bool:
    lower = (text or "").lower()
    if action_type in (ActionType.EMAIL_SEND, ActionType.MEETING_SCHEDULE):
        return not any(w in lower for w in ("internal", "team", "preparation"))
    if action_type == ActionType.DOCUMENT_PREP:
        return any(w in lower for w in ("send", "deliver", "share"))
    return False


def is_late_stage(stage: Optional[str]) -> bool:
    lower = (stage or "").lower()
    return any(marker in lower for marker in LATE_STAGE_MARKERS)


def suggest_due_days(stage: Optional[str], action_type: ActionType) -> int:
    table = URGENT_DUE_DAYS if is_late_stage(stage) else NORMAL_DUE_DAYS
    return table.get(action_type, table[ActionType.MANUAL])


def suggest_priority(stage: Optional[str], action_type: ActionType) -> str:
    if is_late_stage(stage) and action_type in (ActionType.EMAIL_SEND, ActionType.MEETING_SCHEDULE):
        return "high"
    return "medium"
