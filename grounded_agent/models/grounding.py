# The module defines the grounded tool-result contract and the fact records tools return.
# Date: 2026-10-18
# Version: 0.1.0

from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, Field


class RiskLevel(str, Enum):
    """How strictly the output of a tool is grounded, fixed by what the tool can do."""
    CRITICAL = "CRITICAL"  # external side effects (email, meetings)
    HIGH = "HIGH"          # data mutations
    MEDIUM = "MEDIUM"      # interpretation / analysis
    LOW = "LOW"            # retrieval

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class AllowedAddition(str, Enum):
    SUGGESTIONS = "suggestions"
    CONTEXT = "context"
    EXPLANATION = "explanation"
    FOLLOW_UP_QUESTIONS = "follow_up_questions"


class ToolFamily(str, Enum):
    SEND_EMAIL = "send_email"
    SCHEDULE_MEETING = "schedule_meeting"
    CANCEL_MEETING = "cancel_meeting"
    UPDATE_MEETING = "update_meeting"
    CREATE_RECORD = "create_record"
    UPDATE_RECORD = "update_record"
    DELETE_RECORD = "delete_record"
    ANALYSIS = "analysis"
    SEARCH = "search"
    RETRIEVE = "retrieve"


class OutcomeVariant(str, Enum):
    SUCCESS = "success"
    SUCCESS_WITH_INVITES = "success_with_invites"
    SUCCESS_NO_INVITES = "success_no_invites"
    SUCCESS_WITH_NOTIFY = "success_with_notify"
    SUCCESS_NO_NOTIFY = "success_no_notify"
    PARTIAL = "partial"
    DUPLICATE = "duplicate"
    NO_CHANGES = "no_changes"
    BLOCKED = "blocked"
    LOW_CONFIDENCE = "low_confidence"
    NO_RESULTS = "no_results"
    NOT_FOUND = "not_found"
    FAILURE = "failure"


# Risk is a property of the tool family, never of an outcome.
FAMILY_RISK: Dict[ToolFamily, RiskLevel] = {
    ToolFamily.SEND_EMAIL: RiskLevel.CRITICAL,
    ToolFamily.SCHEDULE_MEETING: RiskLevel.CRITICAL,
    ToolFamily.CANCEL_MEETING: RiskLevel.CRITICAL,
    ToolFamily.UPDATE_MEETING: RiskLevel.CRITICAL,
    ToolFamily.CREATE_RECORD: RiskLevel.HIGH,
    ToolFamily.UPDATE_RECORD: RiskLevel.HIGH,
    ToolFamily.DELETE_RECORD: RiskLevel.HIGH,
    ToolFamily.ANALYSIS: RiskLevel.MEDIUM,
    ToolFamily.SEARCH: RiskLevel.LOW,
    ToolFamily.RETRIEVE: RiskLevel.LOW,
}

# Additions a successful result of each tier carries by default.
DEFAULT_ADDITIONS: Dict[RiskLevel, List[AllowedAddition]] = {
    RiskLevel.CRITICAL: [AllowedAddition.SUGGESTIONS],
    RiskLevel.HIGH: [AllowedAddition.SUGGESTIONS, AllowedAddition.CONTEXT],
    RiskLevel.MEDIUM: [AllowedAddition.SUGGESTIONS, AllowedAddition.CONTEXT, AllowedAddition.EXPLANATION],
    RiskLevel.LOW: list(AllowedAddition),
}


# --- Fact records ---

class BaseFacts(BaseModel):
    """Facts are the only statements the model may make about an action."""
    action_completed: bool


class EmailSendFacts(BaseFacts):
    email_sent: bool
    recipients: List[str] = Field(default_factory=list)
    failed_recipients: List[str] = Field(default_factory=list)
    delivery_status: str = "failed"  # sent | queued | partial | failed
    subject: str = ""
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    failure_reason: Optional[str] = None


class MeetingScheduleFacts(BaseFacts):
    meeting_created: bool
    meeting_id: Optional[str] = None
    title: Optional[str] = None
    platform: str = "ZOOM"
    meeting_url: Optional[str] = None
    scheduled_start: Optional[str] = None
    scheduled_end: Optional[str] = None
    duration_minutes: Optional[int] = None
    invites_sent: bool = False
    invites_sent_to: List[str] = Field(default_factory=list)
    invites_failed_for: List[str] = Field(default_factory=list)
    calendar_event_created: bool = False
    crm_synced: bool = False


class MeetingCancelFacts(BaseFacts):
    meeting_cancelled: bool
    meeting_id: str
    meeting_title: str
    notifications_sent: bool = False
    notified_participants: List[str] = Field(default_factory=list)
    notification_failed_for: List[str] = Field(default_factory=list)
    calendar_event_removed: bool = False


class MeetingUpdateFacts(BaseFacts):
    meeting_updated: bool
    meeting_id: str
    meeting_title: str
    fields_changed: List[str] = Field(default_factory=list)
    previous_values: Dict[str, Any] = Field(default_factory=dict)
    new_values: Dict[str, Any] = Field(default_factory=dict)
    notifications_sent: bool = False
    notified_participants: List[str] = Field(default_factory=list)
    notification_failed_for: List[str] = Field(default_factory=list)
    calendar_event_updated: bool = False


class RecordCreateFacts(BaseFacts):
    record_created: bool
    record_type: str
    record_id: Optional[str] = None
    record_name: Optional[str] = None
    fields_set: List[str] = Field(default_factory=list)
    validation_errors: List[str] = Field(default_factory=list)
    duplicate_detected: bool = False


class RecordUpdateFacts(BaseFacts):
    record_updated: bool
    record_type: str
    record_id: str
    record_name: Optional[str] = None
    fields_changed: List[str] = Field(default_factory=list)
    previous_values: Dict[str, Any] = Field(default_factory=dict)
    new_values: Dict[str, Any] = Field(default_factory=dict)
    validation_errors: List[str] = Field(default_factory=list)


class CascadeDeletion(BaseModel):
    type: str
    id: str
    name: Optional[str] = None


class RecordDeleteFacts(BaseFacts):
    record_deleted: bool
    record_type: str
    record_id: str
    record_name: Optional[str] = None
    cascade_deleted: List[CascadeDeletion] = Field(default_factory=list)
    deletion_blocked: bool = False
    block_reason: Optional[str] = None


class AnalysisFacts(BaseFacts):
    analysis_completed: bool
    data_sources_used: List[str] = Field(default_factory=list)
    records_analyzed: int = 0
    confidence_level: str = "medium"  # high | medium | low
    data_freshness: str = ""
    caveats: List[str] = Field(default_factory=list)
    methodology: Optional[str] = None


class SearchFacts(BaseFacts):
    query_executed: bool
    search_criteria: Dict[str, Any] = Field(default_factory=dict)
    total_matching: int = 0
    results_returned: int = 0
    page: Optional[int] = None
    has_more: bool = False


class RetrieveFacts(BaseFacts):
    record_found: bool
    record_type: str
    record_id: Optional[str] = None
    record_name: Optional[str] = None
    fields_returned: List[str] = Field(default_factory=list)
    related_records_included: List[str] = Field(default_factory=list)


FactsT = TypeVar("FactsT")


class ToolExecutionResult(BaseModel, Generic[FactsT]):
    """
    The contract every tool returns (a grounded tool result).

    Attributes:
        success (bool): Whether the tool execution succeeded.
        error (Optional[str]): Error message when success is false.
        facts: The only claims the model may make about this action.
        data: Raw payload for reference, not for free narration.
        verified_response (str): Fact-derived statement of what happened.
        allowed_additions (List[AllowedAddition]): What the model may add beyond verified_response.
        risk_level (RiskLevel): Fixed by the tool's category at authoring time.
        family (Optional[ToolFamily]): The template family the tool belongs to.
    """
    success: bool
    error: Optional[str] = None
    facts: FactsT
    data: Optional[Any] = None
    verified_response: str
    allowed_additions: List[AllowedAddition] = Field(default_factory=list)
    risk_level: RiskLevel
    family: Optional[ToolFamily] = None

    def facts_dict(self) -> Dict[str, Any]:
        facts: Union[BaseModel, Dict[str, Any], Any] = self.facts
        if isinstance(facts, BaseModel):
            return facts.model_dump()
        if isinstance(facts, dict):
            return dict(facts)
        return {}


class GroundedOutput(BaseModel):
    """What the grounding enforcer lets the model see about one tool execution."""
    text: str
    allowed_additions: List[AllowedAddition] = Field(default_factory=list)
    risk_level: RiskLevel
    success: bool
