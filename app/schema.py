# file: app/schema.py
from __future__ import annotations
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.networks import validate_email

Id = Union[int, str]

Priority = Literal["critical", "high", "medium", "low"]
Direction = Literal["sent", "received"]
ProcessingStatus = Literal["processing", "completed", "failed"]
EvidenceType = Literal["email", "meeting"]
DetectionMode = Literal["manual", "rules_only", "ai_only", "hybrid"]
GenerationMode = Literal["playbook", "rules", "manual"]
SuggestionStatus = Literal["pending", "accepted", "dismissed"]
ActionSource = Literal["auto_generated", "playbook", "ai_generated", "email_analysis"]

# role tags a contact can carry on a deal
CONTACT_ROLES = (
    "decision_maker", "economic_buyer", "champion", "influencer",
    "blocker", "end_user", "technical", "executive",
)


class ActionType(str, Enum):
    EMAIL_SEND = "email_send"
    MEETING_SCHEDULE = "meeting_schedule"
    DOCUMENT_PREP = "document_prep"
    TASK_COMPLETE = "task_complete"
    FOLLOW_UP = "follow_up"
    MANUAL = "manual"
    # legacy rows created before the typed action set
    REVIEW = "review"


class NextStep(str, Enum):
    EMAIL = "email"
    CALL = "call"
    WHATSAPP = "whatsapp"
    LINKEDIN = "linkedin"
    SLACK = "slack"
    DOCUMENT = "document"
    INTERNAL_TASK = "internal_task"


class SourceRule(str, Enum):
    # health parameters
    HEALTH_1A_UNKNOWN = "health_1a_unknown"
    HEALTH_1B_SLIPPED = "health_1b_slipped"
    HEALTH_1C_UNKNOWN = "health_1c_unknown"
    HEALTH_2A_NO_BUYER = "health_2a_no_buyer"
    HEALTH_2B_NO_EXEC = "health_2b_no_exec"
    HEALTH_2C_SINGLE_THREAD = "health_2c_single_thread"
    HEALTH_3A_LEGAL = "health_3a_legal"
    HEALTH_3B_SECURITY = "health_3b_security"
    HEALTH_4A_OVERSIZED = "health_4a_oversized"
    HEALTH_4C_SCOPE = "health_4c_scope"
    HEALTH_5A_COMPETITIVE = "health_5a_competitive"
    HEALTH_5B_PRICE = "health_5b_price"
    HEALTH_5C_DISCOUNT = "health_5c_discount"
    HEALTH_6A_NO_MEETING = "health_6a_no_meeting"
    HEALTH_6B_SLOW_RESPONSE = "health_6b_slow_response"
    # stage and timing
    STAGNANT_DEAL = "stagnant_deal"
    CLOSE_IMMINENT = "close_imminent"
    PAST_CLOSE_DATE = "past_close_date"
    HIGH_VALUE_NO_MEETING = "high_value_no_meeting"
    STAGE_QUALIFIED_NO_DISCOVERY = "stage_qualified_no_discovery"
    STAGE_DEMO_NO_DEMO = "stage_demo_no_demo"
    STAGE_PROPOSAL_FOLLOWUP = "stage_proposal_followup"
    STAGE_NEGOTIATION_BLOCKERS = "stage_negotiation_blockers"
    # contacts
    NO_CONTACTS = "no_contacts"
    DECISION_MAKER_NO_CONTACT = "decision_maker_no_contact"
    CHAMPION_NURTURE = "champion_nurture"
    # meetings
    MEETING_PREP = "meeting_prep"
    MEETING_FOLLOWUP = "meeting_followup"
    # emails
    UNANSWERED_EMAIL = "unanswered_email"
    # files
    NO_FILES = "no_files"
    FAILED_FILE = "failed_file"
    NO_PROPOSAL_DOC = "no_proposal_doc"
    # playbook and AI sources
    PLAYBOOK = "playbook"
    AI_ENHANCER = "ai_enhancer"
    EMAIL_ANALYSIS = "email_analysis"


# ---------- CRM records (read-only inputs) ----------

class Deal(BaseModel):
    id: Id
    name: str = "Deal"
    stage: str = ""
    value: float = 0.0
    close_date: Optional[Union[datetime, date]] = None
    updated_at: Optional[datetime] = None
    account_id: Optional[Id] = None
    user_id: Optional[Id] = None
    org_id: Optional[Id] = None
    health: Optional[str] = None  # healthy, watch, risk
    health_score: Optional[float] = None
    health_score_breakdown: Optional[Union[Dict[str, Any], str]] = None

    @field_validator("value", mode="before")
    @classmethod
    def _value_or_zero(cls, v):
        return 0.0 if v in (None, "") else v


class Account(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Id
    name: str = ""
    industry: Optional[str] = None


class Contact(BaseModel):
    id: Id
    first_name: str = ""
    last_name: str = ""
    email: Optional[EmailStr] = None
    title: Optional[str] = None
    role_type: Optional[str] = None
    deal_role: Optional[str] = None  # role assigned on this deal via deal_contacts

    @field_validator("email", mode="before")
    @classmethod
    def _unusable_email_is_none(cls, v):
        # CRM rows hold free-text addresses; a bad one must not sink the contact
        if v is None or not str(v).strip():
            return None
        try:
            validate_email(str(v).strip())
        except ValueError:
            return None
        return str(v).strip()

    @property
    def role(self) -> Optional[str]:
        return self.deal_role or self.role_type

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Meeting(BaseModel):
    id: Id
    deal_id: Optional[Id] = None
    title: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    meeting_type: Optional[str] = None
    status: str = "scheduled"  # scheduled, completed, cancelled
    start_time: datetime
    end_time: Optional[datetime] = None


class Email(BaseModel):
    id: Id
    deal_id: Optional[Id] = None
    contact_id: Optional[Id] = None
    direction: Direction
    subject: Optional[str] = None
    body: Optional[str] = None
    to_address: Optional[str] = None
    sent_at: Optional[datetime] = None
    has_attachments: bool = False


class StorageFile(BaseModel):
    id: Id
    deal_id: Optional[Id] = None
    file_name: str
    category: Optional[str] = None
    processing_status: ProcessingStatus = "processing"
    ai_summary: Optional[str] = None


class HealthParam(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    state: Optional[str] = None  # confirmed, unknown, absent
    label: Optional[str] = None
    count: Optional[int] = None
    ratio: Optional[Union[float, str]] = None
    competitors: List[Any] = []
    push_count: Optional[int] = Field(default=None, alias="pushCount")
    avg_hours: Optional[float] = Field(default=None, alias="avgHours")
    days_since_last_meeting: Optional[int] = Field(default=None, alias="daysSinceLastMeeting")

    def competitor_names(self) -> List[str]:
        names = []
        for c in self.competitors:
            name = c.get("name") if isinstance(c, dict) else c
            if name:
                names.append(str(name))
        return names


class HealthBreakdown(BaseModel):
    params: Dict[str, HealthParam] = {}
    categories: Dict[str, Any] = {}

    def state_of(self, key: str) -> Optional[str]:
        param = self.params.get(key)
        return param.state if param else None


# ---------- Engine outputs ----------

class ActionCandidate(BaseModel):
    title: str
    description: str = ""
    action_type: ActionType
    priority: Priority = "medium"
    due_date: datetime
    deal_id: Optional[Id] = None
    account_id: Optional[Id] = None
    contact_id: Optional[Id] = None
    suggested_action: Optional[str] = None
    health_param: Optional[str] = None
    keywords: Optional[List[str]] = None
    requires_external_evidence: bool = False
    deal_stage: Optional[str] = None
    source: ActionSource = "auto_generated"
    source_rule: SourceRule
    next_step: Optional[NextStep] = None
    # set by a rule when the channel depends on a runtime value
    next_step_override: Optional[NextStep] = Field(default=None, exclude=True)
    context: Optional[str] = None

    @field_validator("keywords")
    @classmethod
    def _cap_keywords(cls, v):
        return v[:5] if v else v


class Action(BaseModel):
    """A persisted action row as the store returns it."""
    model_config = ConfigDict(extra="allow")

    id: Id
    org_id: Optional[Id] = None
    user_id: Optional[Id] = None
    deal_id: Optional[Id] = None
    account_id: Optional[Id] = None
    contact_id: Optional[Id] = None
    title: str
    description: Optional[str] = None
    action_type: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[datetime] = None
    suggested_action: Optional[str] = None
    health_param: Optional[str] = None
    keywords: Optional[List[str]] = None
    requires_external_evidence: bool = False
    source: Optional[str] = None
    source_rule: Optional[str] = None
    next_step: Optional[str] = None
    status: str = "open"
    completed: bool = False
    auto_completed: bool = False
    completion_confidence: Optional[int] = None
    completion_evidence: Optional[Dict[str, Any]] = None
    completed_at: Optional[datetime] = None
    pending_suggestions: List[Dict[str, Any]] = []


class ActionSuggestion(BaseModel):
    id: Id
    action_id: Id
    org_id: Optional[Id] = None
    user_id: Optional[Id] = None
    deal_id: Optional[Id] = None
    evidence_type: EvidenceType
    evidence_id: Id
    evidence_snippet: str = ""
    confidence: int
    reasoning: str = ""
    detection_source: Optional[str] = None
    status: SuggestionStatus = "pending"
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


# ---------- Configuration value objects ----------

class DetectionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    detection_mode: DetectionMode = "hybrid"
    detect_from_emails: bool = True
    detect_from_meetings: bool = True
    confidence_threshold: int = 70
    auto_complete_threshold: int = 95

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]], settings=None) -> "DetectionConfig":
        base: Dict[str, Any] = {}
        if settings is not None:
            base = {
                "detection_mode": settings.detection_mode,
                "confidence_threshold": settings.confidence_threshold,
                "auto_complete_threshold": settings.auto_complete_threshold,
            }
        for key in cls.model_fields:
            if row and row.get(key) is not None:
                base[key] = row[key]
        return cls(**base)

    def channel_enabled(self, evidence_type: str) -> bool:
        if self.detection_mode == "manual":
            return False
        if evidence_type == "email":
            return self.detect_from_emails
        if evidence_type == "meeting":
            return self.detect_from_meetings
        return False


class ActionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    generation_mode: GenerationMode = "playbook"
    ai_enhanced_generation: bool = False

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]], settings=None) -> "ActionConfig":
        base: Dict[str, Any] = {}
        if settings is not None:
            base["ai_enhanced_generation"] = settings.ai_enhanced_generation
        for key in cls.model_fields:
            if row and row.get(key) is not None:
                base[key] = row[key]
        return cls(**base)


class MatchResult(BaseModel):
    completes_action: bool = False
    confidence: int = Field(ge=0, le=100)
    reasoning: str = ""
    evidence: str = ""
    flags: List[str] = []
    detection_source: str = "rules"
    # True when the score is a documented default rather than a real judgement
    fallback: bool = False


class DetectionOutcome(BaseModel):
    action_id: Id
    outcome: Literal["completed", "suggested", "already_completed", "duplicate_suggestion", "below_threshold",
                     "skipped"]
    confidence: int
    detection_source: str
    skipped_reason: Optional[str] = None  # set when outcome is "skipped"


class DetectionReport(BaseModel):
    trigger: EvidenceType
    evidence_id: Id
    outcomes: List[DetectionOutcome] = []
    skipped_reason: Optional[str] = None


# ---------- Deal context snapshot ----------

class DerivedSignals(BaseModel):
    model_config = ConfigDict(frozen=True)

    completed_meetings: List[Meeting] = []
    upcoming_meetings: List[Meeting] = []
    last_meeting: Optional[Meeting] = None
    days_since_last_meeting: Optional[int] = None
    sent_emails: List[Email] = []
    received_emails: List[Email] = []
    last_email: Optional[Email] = None
    days_since_last_email: Optional[int] = None
    unanswered_emails: List[Email] = []
    decision_makers: List[Contact] = []
    champions: List[Contact] = []
    stakeholders: List[Contact] = []
    processed_files: List[StorageFile] = []
    pending_files: List[StorageFile] = []
    failed_files: List[StorageFile] = []
    days_in_stage: int = 0
    days_until_close: Optional[int] = None
    is_past_close: bool = False
    closing_imminently: bool = False
    is_high_value: bool = False
    is_stagnant: bool = False


class DealContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    deal: Deal
    account: Optional[Account] = None
    contacts: List[Contact] = []
    meetings: List[Meeting] = []
    emails: List[Email] = []
    files: List[StorageFile] = []
    playbook: Optional[Dict[str, Any]] = None
    playbook_stage_actions: List[str] = []
    health_config: Optional[Dict[str, Any]] = None
    health_breakdown: Optional[HealthBreakdown] = None
    health_score: Optional[float] = None
    health_status: str = "unknown"
    completed_action_titles: List[str] = []
    user_id: Id
    org_id: Id
    now: datetime
    derived: DerivedSignals


# ---------- Email analysis ----------

class EmailActionItem(BaseModel):
    description: str
    deadline: Optional[datetime] = None
    priority: Priority = "medium"
    estimated_effort: Optional[str] = None


class EmailAnalysis(BaseModel):
    action_items: List[EmailActionItem] = []
    key_contacts: List[str] = []
    category: str = "Information"
    sentiment: str = "neutral"
    priority: Priority = "medium"
    summary: str = ""
    requires_response: bool = False
    suggested_actions: List[str] = []
    error: Optional[str] = None


class GenerationResult(BaseModel):
    deal_id: Id
    candidates: List[ActionCandidate] = []
    persisted: List[Action] = []
    ai_actions: int = 0
    skipped_reason: Optional[str] = None


# ---------- API requests ----------

class Scope(BaseModel):
    user_id: Id
    org_id: Id


class GenerateRequest(Scope):
    deal_ids: List[Id]
    persist: bool = True


class ActionEmailCheck(Scope):
    email_id: Id
    action_id: Id
