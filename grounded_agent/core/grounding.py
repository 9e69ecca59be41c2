# The module enforces grounding on tool results before the model sees them.
# Date: 2026-10-18
# Version: 0.1.0

import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel

from grounded_agent.models.grounding import (
    DEFAULT_ADDITIONS,
    FAMILY_RISK,
    AllowedAddition,
    GroundedOutput,
    OutcomeVariant,
    RiskLevel,
    ToolExecutionResult,
    ToolFamily,
)

# A template renders the verified text from the facts, an optional free-form
# detail produced by the tool (search results, analysis summary) and an error.
Template = Callable[[Dict[str, Any], str, Optional[str]], str]

RESPONSE_TEMPLATES: Dict[Tuple[ToolFamily, OutcomeVariant], Template] = {}

# The most a tier ever lets the model add, whatever a tool declares.
TIER_PERMITTED: Dict[RiskLevel, List[AllowedAddition]] = {
    RiskLevel.CRITICAL: [AllowedAddition.SUGGESTIONS, AllowedAddition.CONTEXT],
    RiskLevel.HIGH: [AllowedAddition.SUGGESTIONS, AllowedAddition.CONTEXT],
    RiskLevel.MEDIUM: [AllowedAddition.SUGGESTIONS, AllowedAddition.CONTEXT, AllowedAddition.EXPLANATION],
    RiskLevel.LOW: list(AllowedAddition),
}

MAX_REFERENCE_CHARS = 8000


def template(family: ToolFamily, *variants: OutcomeVariant):
    """Registers a response template for one or more outcome variants of a tool family."""
    def decorator(func: Template) -> Template:
        for variant in variants:
            RESPONSE_TEMPLATES[(family, variant)] = func
        return func
    return decorator


def _join(values) -> str:
    return ", ".join(str(v) for v in values or [])


def _changes(f: Dict[str, Any]) -> str:
    previous = f.get("previous_values") or {}
    new = f.get("new_values") or {}
    return ", ".join(
        f"{field}: {previous.get(field)} → {new.get(field)}" for field in f.get("fields_changed") or []
    )


def _label(f: Dict[str, Any]) -> str:
    return f.get("record_name") or f.get("record_id") or ""


# ===== CRITICAL: Email =====

@template(ToolFamily.SEND_EMAIL, OutcomeVariant.SUCCESS)
def _email_success(f, detail, error):
    text = (
        f"Email sent successfully.\n• To: {_join(f.get('recipients'))}"
        f"\n• Subject: \"{f.get('subject', '')}\"\n• Status: {f.get('delivery_status')}"
    )
    if f.get("message_id"):
        text += f"\n• Message ID: {f['message_id']}"
    return text


@template(ToolFamily.SEND_EMAIL, OutcomeVariant.PARTIAL)
def _email_partial(f, detail, error):
    failed = f.get("failed_recipients") or []
    delivered = [r for r in f.get("recipients") or [] if r not in failed]
    return (
        f"Email partially delivered.\n• Delivered to: {_join(delivered)}"
        f"\n• Failed for: {_join(failed)}\n• Reason: {f.get('failure_reason') or 'Unknown'}"
    )


@template(ToolFamily.SEND_EMAIL, OutcomeVariant.FAILURE)
def _email_failure(f, detail, error):
    return f"Failed to send email: {f.get('failure_reason') or error or 'Unknown error'}"


# ===== CRITICAL: Meetings =====

def _meeting_core(f: Dict[str, Any]) -> str:
    lines = ["Meeting scheduled successfully."]
    if f.get("title"):
        lines.append(f"• Title: {f['title']}")
    lines.append(f"• Platform: {f.get('platform')}")
    lines.append(f"• Date/Time: {f.get('scheduled_start')}")
    if f.get("duration_minutes") is not None:
        lines.append(f"• Duration: {f['duration_minutes']} minutes")
    if f.get("meeting_url"):
        lines.append(f"• Meeting Link: {f['meeting_url']}")
    return "\n".join(lines)


@template(ToolFamily.SCHEDULE_MEETING, OutcomeVariant.SUCCESS_WITH_INVITES)
def _meeting_with_invites(f, detail, error):
    text = _meeting_core(f) + f"\n• Calendar invites sent to: {_join(f.get('invites_sent_to'))}"
    if f.get("invites_failed_for"):
        text += f"\n• Invites could not be sent to: {_join(f['invites_failed_for'])}"
    if f.get("crm_synced"):
        text += "\n• Synced to CRM calendar"
    return text


@template(ToolFamily.SCHEDULE_MEETING, OutcomeVariant.SUCCESS_NO_INVITES)
def _meeting_no_invites(f, detail, error):
    text = (
        _meeting_core(f)
        + "\n\n⚠️ No calendar invites were sent - no attendee email addresses were provided."
        + "\nPlease share the meeting link manually or provide attendee emails to send invites."
    )
    if f.get("crm_synced"):
        text += "\n• Synced to CRM calendar"
    return text


@template(ToolFamily.SCHEDULE_MEETING, OutcomeVariant.FAILURE)
def _meeting_failure(f, detail, error):
    return f"Failed to schedule meeting: {error or 'Unknown error'}"


@template(ToolFamily.CANCEL_MEETING, OutcomeVariant.SUCCESS_WITH_NOTIFY)
def _cancel_with_notify(f, detail, error):
    text = (
        f"Meeting \"{f.get('meeting_title')}\" has been cancelled."
        f"\n• Cancellation notifications sent to: {_join(f.get('notified_participants'))}"
    )
    if f.get("calendar_event_removed"):
        text += "\n• Calendar event removed"
    return text


@template(ToolFamily.CANCEL_MEETING, OutcomeVariant.SUCCESS_NO_NOTIFY)
def _cancel_no_notify(f, detail, error):
    text = (
        f"Meeting \"{f.get('meeting_title')}\" has been cancelled."
        "\n⚠️ No cancellation notifications were sent (no participant emails on file)."
    )
    if f.get("calendar_event_removed"):
        text += "\n• Calendar event removed"
    return text


@template(ToolFamily.CANCEL_MEETING, OutcomeVariant.FAILURE)
def _cancel_failure(f, detail, error):
    return f"Failed to cancel meeting: {error or 'Unknown error'}"


@template(ToolFamily.UPDATE_MEETING, OutcomeVariant.SUCCESS_WITH_NOTIFY)
def _update_meeting_with_notify(f, detail, error):
    return (
        f"Meeting \"{f.get('meeting_title')}\" updated successfully.\n• Changes: {_changes(f)}"
        f"\n• Update notifications sent to: {_join(f.get('notified_participants'))}"
    )


@template(ToolFamily.UPDATE_MEETING, OutcomeVariant.SUCCESS_NO_NOTIFY)
def _update_meeting_no_notify(f, detail, error):
    return (
        f"Meeting \"{f.get('meeting_title')}\" updated successfully.\n• Changes: {_changes(f)}"
        "\n⚠️ No update notifications were sent - no participant emails on file."
        "\nPlease notify participants manually about the changes."
    )


@template(ToolFamily.UPDATE_MEETING, OutcomeVariant.NO_CHANGES)
def _update_meeting_no_changes(f, detail, error):
    return (
        f"No changes made to meeting \"{f.get('meeting_title')}\" - "
        "values were already set to the requested values."
    )


@template(ToolFamily.UPDATE_MEETING, OutcomeVariant.FAILURE)
def _update_meeting_failure(f, detail, error):
    return f"Failed to update meeting: {error or 'Unknown error'}"


# ===== HIGH: Records =====

@template(ToolFamily.CREATE_RECORD, OutcomeVariant.SUCCESS)
def _create_success(f, detail, error):
    return (
        f"{f.get('record_type')} \"{_label(f)}\" created successfully."
        f"\n• ID: {f.get('record_id')}\n• Fields set: {_join(f.get('fields_set'))}"
    )


@template(ToolFamily.CREATE_RECORD, OutcomeVariant.DUPLICATE)
def _create_duplicate(f, detail, error):
    return (
        f"{f.get('record_type')} created, but a potential duplicate was detected."
        f"\n• ID: {f.get('record_id')}\n• Please review for duplicates."
    )


@template(ToolFamily.CREATE_RECORD, OutcomeVariant.FAILURE)
def _create_failure(f, detail, error):
    reason = _join(f.get("validation_errors")) or error or "Unknown error"
    return f"Failed to create {f.get('record_type') or 'record'}: {reason}"


@template(ToolFamily.UPDATE_RECORD, OutcomeVariant.SUCCESS)
def _update_success(f, detail, error):
    return f"{f.get('record_type')} \"{_label(f)}\" updated successfully.\n• Fields changed: {_changes(f)}"


@template(ToolFamily.UPDATE_RECORD, OutcomeVariant.NO_CHANGES)
def _update_no_changes(f, detail, error):
    return (
        f"No changes made to {f.get('record_type')} \"{_label(f)}\" - "
        "values were already set to the requested values."
    )


@template(ToolFamily.UPDATE_RECORD, OutcomeVariant.FAILURE)
def _update_failure(f, detail, error):
    reason = _join(f.get("validation_errors")) or error or "Unknown error"
    return f"Failed to update {f.get('record_type') or 'record'}: {reason}"


@template(ToolFamily.DELETE_RECORD, OutcomeVariant.SUCCESS)
def _delete_success(f, detail, error):
    text = f"{f.get('record_type')} \"{_label(f)}\" deleted successfully."
    cascade = f.get("cascade_deleted") or []
    if cascade:
        also = ", ".join(f"{r.get('type')} \"{r.get('name') or r.get('id')}\"" for r in cascade)
        text += f"\n• Also deleted: {also}"
    return text


@template(ToolFamily.DELETE_RECORD, OutcomeVariant.BLOCKED)
def _delete_blocked(f, detail, error):
    return f"Cannot delete {f.get('record_type')} \"{_label(f)}\": {f.get('block_reason') or error}"


@template(ToolFamily.DELETE_RECORD, OutcomeVariant.FAILURE)
def _delete_failure(f, detail, error):
    return f"Failed to delete record: {error or 'Unknown error'}"


# ===== MEDIUM: Analysis =====

@template(ToolFamily.ANALYSIS, OutcomeVariant.SUCCESS)
def _analysis_success(f, detail, error):
    text = (
        f"Analysis completed ({f.get('confidence_level')} confidence)."
        f"\n• Data sources: {_join(f.get('data_sources_used'))}"
        f"\n• Records analyzed: {f.get('records_analyzed')}\n• Data as of: {f.get('data_freshness')}"
    )
    if f.get("caveats"):
        text += f"\n• Caveats: {'; '.join(f['caveats'])}"
    return f"{text}\n\n{detail}" if detail else text


@template(ToolFamily.ANALYSIS, OutcomeVariant.LOW_CONFIDENCE)
def _analysis_low_confidence(f, detail, error):
    text = (
        "⚠️ Analysis completed with LOW confidence - results should be verified."
        f"\n• Data sources: {_join(f.get('data_sources_used'))}\n• Caveats: {'; '.join(f.get('caveats') or [])}"
    )
    return f"{text}\n\n{detail}" if detail else text


@template(ToolFamily.ANALYSIS, OutcomeVariant.FAILURE)
def _analysis_failure(f, detail, error):
    return f"Analysis failed: {error or 'Unknown error'}"


# ===== LOW: Retrieval =====

@template(ToolFamily.SEARCH, OutcomeVariant.SUCCESS)
def _search_success(f, detail, error):
    total = f.get("total_matching", 0)
    text = f"Found {total} result{'' if total == 1 else 's'}"
    if f.get("has_more"):
        text += f" (showing {f.get('results_returned')})"
    text += "."
    return f"{text}\n\n{detail}" if detail else text


@template(ToolFamily.SEARCH, OutcomeVariant.NO_RESULTS)
def _search_no_results(f, detail, error):
    return "No results found matching your criteria."


@template(ToolFamily.SEARCH, OutcomeVariant.FAILURE)
def _search_failure(f, detail, error):
    return f"Search failed: {error or 'Unknown error'}"


@template(ToolFamily.RETRIEVE, OutcomeVariant.SUCCESS)
def _retrieve_success(f, detail, error):
    return detail or f"{f.get('record_type')} \"{_label(f)}\" retrieved."


@template(ToolFamily.RETRIEVE, OutcomeVariant.NOT_FOUND)
def _retrieve_not_found(f, detail, error):
    return f"{f.get('record_type')} with ID \"{f.get('record_id')}\" not found."


@template(ToolFamily.RETRIEVE, OutcomeVariant.FAILURE)
def _retrieve_failure(f, detail, error):
    return f"Failed to retrieve record: {error or 'Unknown error'}"


# --- Variant selection ---

def select_variant(family: ToolFamily, success: bool, facts: Dict[str, Any]) -> OutcomeVariant:
    """Picks the outcome variant whose template describes these facts."""
    if family is ToolFamily.DELETE_RECORD and facts.get("deletion_blocked"):
        return OutcomeVariant.BLOCKED
    if not success:
        return OutcomeVariant.FAILURE

    if family is ToolFamily.SEND_EMAIL:
        return OutcomeVariant.PARTIAL if facts.get("failed_recipients") else OutcomeVariant.SUCCESS
    if family is ToolFamily.SCHEDULE_MEETING:
        if facts.get("invites_sent_to"):
            return OutcomeVariant.SUCCESS_WITH_INVITES
        return OutcomeVariant.SUCCESS_NO_INVITES
    if family is ToolFamily.CANCEL_MEETING:
        if facts.get("notified_participants"):
            return OutcomeVariant.SUCCESS_WITH_NOTIFY
        return OutcomeVariant.SUCCESS_NO_NOTIFY
    if family is ToolFamily.UPDATE_MEETING:
        if not facts.get("fields_changed"):
            return OutcomeVariant.NO_CHANGES
        if facts.get("notified_participants"):
            return OutcomeVariant.SUCCESS_WITH_NOTIFY
        return OutcomeVariant.SUCCESS_NO_NOTIFY
    if family is ToolFamily.CREATE_RECORD and facts.get("duplicate_detected"):
        return OutcomeVariant.DUPLICATE
    if family is ToolFamily.UPDATE_RECORD and not facts.get("fields_changed"):
        return OutcomeVariant.NO_CHANGES
    if family is ToolFamily.ANALYSIS and facts.get("confidence_level") == "low":
        return OutcomeVariant.LOW_CONFIDENCE
    if family is ToolFamily.SEARCH and not facts.get("total_matching"):
        return OutcomeVariant.NO_RESULTS
    if family is ToolFamily.RETRIEVE and not facts.get("record_found", True):
        return OutcomeVariant.NOT_FOUND
    return OutcomeVariant.SUCCESS


def render(family: ToolFamily, variant: OutcomeVariant, facts: Dict[str, Any],
           detail: str = "", error: Optional[str] = None) -> str:
    """Renders the registered template; a missing pair is a programming error."""
    return RESPONSE_TEMPLATES[(family, variant)](facts, detail, error)


# --- Result factories ---

def _facts_as_dict(facts: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    return facts.model_dump() if isinstance(facts, BaseModel) else dict(facts)


def _create_result(risk_level: RiskLevel, success: bool, facts, verified_response: str,
                   data: Any = None, error: Optional[str] = None,
                   family: Optional[ToolFamily] = None) -> ToolExecutionResult:
    # Failed CRITICAL..MEDIUM actions leave the model nothing to add.
    if success or risk_level is RiskLevel.LOW:
        additions = list(DEFAULT_ADDITIONS[risk_level])
    else:
        additions = []
    return ToolExecutionResult(
        success=success,
        error=error,
        facts=facts,
        data=data,
        verified_response=verified_response,
        allowed_additions=additions,
        risk_level=risk_level,
        family=family,
    )


def create_critical_result(success: bool, facts, verified_response: str, data: Any = None,
                           error: Optional[str] = None, family: Optional[ToolFamily] = None) -> ToolExecutionResult:
    """Grounded result for tools with external side effects."""
    return _create_result(RiskLevel.CRITICAL, success, facts, verified_response, data, error, family)


def create_high_risk_result(success: bool, facts, verified_response: str, data: Any = None,
                            error: Optional[str] = None, family: Optional[ToolFamily] = None) -> ToolExecutionResult:
    """Grounded result for tools that mutate data."""
    return _create_result(RiskLevel.HIGH, success, facts, verified_response, data, error, family)


def create_medium_risk_result(success: bool, facts, verified_response: str, data: Any = None,
                              error: Optional[str] = None, family: Optional[ToolFamily] = None) -> ToolExecutionResult:
    """Grounded result for interpretation and analysis tools."""
    return _create_result(RiskLevel.MEDIUM, success, facts, verified_response, data, error, family)


def create_low_risk_result(success: bool, facts, verified_response: str, data: Any = None,
                           error: Optional[str] = None, family: Optional[ToolFamily] = None) -> ToolExecutionResult:
    """Grounded result for pure retrieval tools."""
    return _create_result(RiskLevel.LOW, success, facts, verified_response, data, error, family)


def build_result(family: ToolFamily, success: bool, facts, detail: str = "", data: Any = None,
                 error: Optional[str] = None) -> ToolExecutionResult:
    """
    Builds a complete grounded result for a tool of a known family: the risk
    level comes from the family, the verified response from its template.
    """
    facts_dict = _facts_as_dict(facts)
    variant = select_variant(family, success, facts_dict)
    verified = render(family, variant, facts_dict, detail, error)
    return _create_result(FAMILY_RISK[family], success, facts, verified, data, error, family)


def failed_result(error: str, tool_name: Optional[str] = None) -> ToolExecutionResult:
    """The result synthesised when a tool call could not be executed at all."""
    name = tool_name or "tool"
    return ToolExecutionResult(
        success=False,
        error=error,
        facts={"action_completed": False},
        verified_response=f"Tool '{name}' failed: {error}",
        allowed_additions=[],
        risk_level=RiskLevel.HIGH,
    )


# --- Enforcement ---

def _failure_text(result: ToolExecutionResult) -> str:
    facts = result.facts_dict()
    if result.family is not None:
        variant = select_variant(result.family, False, facts)
        return render(result.family, variant, facts, error=result.error)
    return f"Action failed: {result.error or 'Unknown error'}"


def _permitted(result: ToolExecutionResult) -> List[AllowedAddition]:
    ceiling = TIER_PERMITTED[result.risk_level]
    return [addition for addition in result.allowed_additions if addition in ceiling]


def enforce(result: ToolExecutionResult) -> GroundedOutput:
    """
    Decides what the model may see about one tool execution.

    CRITICAL and HIGH results surface the verified response byte-for-byte on
    success and a fact-only failure template otherwise. MEDIUM results keep the
    verified response and may carry an explanation. LOW results leave the model
    every addition category.
    """
    risk = result.risk_level
    if risk in (RiskLevel.CRITICAL, RiskLevel.HIGH):
        if result.success:
            return GroundedOutput(
                text=result.verified_response,
                allowed_additions=_permitted(result),
                risk_level=risk,
                success=True,
            )
        return GroundedOutput(text=_failure_text(result), allowed_additions=[], risk_level=risk, success=False)

    text = result.verified_response or (_failure_text(result) if not result.success else "")
    additions = _permitted(result)
    if risk is RiskLevel.MEDIUM and not result.success:
        additions = []
    return GroundedOutput(text=text, allowed_additions=additions, risk_level=risk, success=result.success)


def render_tool_message(output: GroundedOutput, result: ToolExecutionResult) -> str:
    """
    Builds the content of the tool-result message appended to the conversation.

    CRITICAL and HIGH messages are exactly `output.text` so the model sees the
    verified response byte-identical. Their `allowed_additions` are not
    appended here. The orchestrator's grounding system prompt states the
    standing permission for these tiers instead.
    """
    if output.risk_level in (RiskLevel.CRITICAL, RiskLevel.HIGH):
        return output.text

    parts = [output.text]
    if output.allowed_additions:
        permitted = ", ".join(addition.value for addition in output.allowed_additions)
        parts.append(f"---\nYou may add beyond the text above: {permitted}.")
    if output.risk_level is RiskLevel.LOW and result.data is not None:
        reference = json.dumps(result.data, default=str, ensure_ascii=False)
        if len(reference) > MAX_REFERENCE_CHARS:
            reference = reference[:MAX_REFERENCE_CHARS] + "…"
        parts.append(f"Reference data (JSON):\n{reference}")
    return "\n\n".join(parts)


def highest_risk_level(results: List[ToolExecutionResult]) -> RiskLevel:
    if not results:
        return RiskLevel.LOW
    return max((r.risk_level for r in results), key=lambda risk: risk.rank)
