# The module audits a final model answer against the facts its tools returned.
# Date: 2026-10-18
# Version: 0.1.0

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from grounded_agent.core.grounding import highest_risk_level
from grounded_agent.models.grounding import RiskLevel, ToolExecutionResult
from grounded_agent.utils.logger import console


class Claim(BaseModel):
    type: str  # action | state | count | assertion
    text: str
    fact_key: str
    subject: Optional[str] = None
    value: Optional[Any] = None
    start: int = 0
    end: int = 0


class ClaimVerification(BaseModel):
    claim: Claim
    verified: bool = False
    grounded_by: Optional[str] = None
    contradiction: Optional[str] = None
    confidence: float = 0.0


class GroundingAudit(BaseModel):
    """Audit entry for one final answer; it never rewrites the answer."""
    risk_level: RiskLevel
    claims_extracted: int = 0
    claims_verified: int = 0
    contradictions: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def has_contradictions(self) -> bool:
        return bool(self.contradictions)


class _Pattern:
    def __init__(self, pattern: str, type: str, fact_key: str,
                 value_group: Optional[int] = None, subject_group: Optional[int] = None):
        self.regex = re.compile(pattern, re.IGNORECASE)
        self.type = type
        self.fact_key = fact_key
        self.value_group = value_group
        self.subject_group = subject_group


CLAIM_PATTERNS: List[_Pattern] = [
    # Email
    _Pattern(r"(?:I |I've |I have )?(?:sent|delivered|emailed|forwarded)\s+(?:an? )?(?:email|message)\s+(?:to\s+)?([^.\n,]+)",
             "action", "email_sent", subject_group=1),
    _Pattern(r"email\s+(?:was |has been )?(?:sent|delivered)\s+(?:successfully\s+)?(?:to\s+)?([^.\n,]+)",
             "action", "email_sent", subject_group=1),
    # Meetings
    _Pattern(r"(?:I |I've |I have )?(?:scheduled|booked|set up)\s+(?:a |the )?(?:meeting|call|session)",
             "action", "meeting_created"),
    _Pattern(r"meeting\s+(?:has been |was )?(?:scheduled|booked|created)", "action", "meeting_created"),
    _Pattern(r"(?:calendar )?invit(?:e|ation)s?\s+(?:were |have been |has been )?(?:sent|delivered)(?:\s+to\s+([^.\n,]+))?",
             "action", "invites_sent", subject_group=1),
    _Pattern(r"meeting\s+(?:has been |was )?(?:cancelled|canceled)", "action", "meeting_cancelled"),
    _Pattern(r"(?:cancellation )?notifications?\s+(?:were |have been |has been )?sent(?:\s+to\s+([^.\n,]+))?",
             "action", "notifications_sent", subject_group=1),
    # Records
    _Pattern(r"(?:the )?(?:lead|contact|account|opportunity|task)\s+(?:has been |was )?(?:created|added)",
             "action", "record_created"),
    _Pattern(r"(?:the )?(?:lead|contact|account|opportunity|task)\s+(?:has been |was )?(?:updated|modified)",
             "action", "record_updated"),
    _Pattern(r"(?:I |I've |I have )?(?:deleted|removed)\s+(?:the )?(?:lead|contact|account|opportunity|task)",
             "action", "record_deleted"),
    # Search
    _Pattern(r"found\s+(\d+)\s+(?:matching\s+)?(?:results?|records?|leads?|contacts?|accounts?|opportunities?)",
             "count", "total_matching", value_group=1),
    # Assertions
    _Pattern(r"synced\s+(?:to|with)\s+(?:the )?CRM", "assertion", "crm_synced"),
    _Pattern(r"calendar\s+event\s+(?:was |has been )?(?:created|added)", "assertion", "calendar_event_created"),
]


def aggregate_facts(results: List[ToolExecutionResult]) -> Dict[str, Any]:
    """Merges facts of several results: lists concatenate, numbers add up, booleans must all hold."""
    aggregated: Dict[str, Any] = {}
    for result in results:
        for key, value in result.facts_dict().items():
            current = aggregated.get(key)
            if isinstance(value, list) and isinstance(current, list):
                aggregated[key] = current + value
            elif isinstance(value, bool) and isinstance(current, bool):
                aggregated[key] = current and value
            elif isinstance(value, (int, float)) and isinstance(current, (int, float)) \
                    and not isinstance(value, bool) and not isinstance(current, bool):
                aggregated[key] = current + value
            else:
                aggregated[key] = value
    return aggregated


def extract_claims(text: str) -> List[Claim]:
    claims: List[Claim] = []
    for pattern in CLAIM_PATTERNS:
        for match in pattern.regex.finditer(text):
            claim = Claim(type=pattern.type, text=match.group(0), fact_key=pattern.fact_key,
                          start=match.start(), end=match.end())
            if pattern.value_group is not None and match.group(pattern.value_group):
                raw = match.group(pattern.value_group)
                claim.value = int(raw) if raw.isdigit() else raw
            if pattern.subject_group is not None and match.group(pattern.subject_group):
                claim.subject = match.group(pattern.subject_group).strip()
            claims.append(claim)
    claims.sort(key=lambda c: c.start)
    return claims


def verify_claim(claim: Claim, facts: Dict[str, Any]) -> ClaimVerification:
    result = ClaimVerification(claim=claim)
    if claim.fact_key not in facts:
        # Nothing to check against: the claim is about an action no tool reported.
        result.confidence = 0.3
        return result

    fact = facts[claim.fact_key]
    if isinstance(fact, bool):
        result.verified = fact
        result.confidence = 1.0
        if fact:
            result.grounded_by = claim.fact_key
        else:
            result.contradiction = f'Fact "{claim.fact_key}" is false but the answer asserts it'
        return result

    if claim.type == "count" and claim.value is not None and isinstance(fact, (int, float)):
        result.confidence = 1.0
        if claim.value == fact:
            result.verified = True
            result.grounded_by = f"{claim.fact_key}={fact}"
        else:
            result.contradiction = f"Answer states {claim.value} but fact shows {fact}"
        return result

    if isinstance(fact, list) and claim.subject:
        subject = claim.subject.lower()
        found = any(str(v).lower() in subject or subject in str(v).lower() for v in fact)
        result.verified = found
        result.confidence = 0.9 if found else 0.5
        if found:
            result.grounded_by = f'{claim.fact_key} contains "{claim.subject}"'
        else:
            result.contradiction = f'"{claim.subject}" not found in {claim.fact_key}'
        return result

    result.verified = True
    result.confidence = 0.6
    result.grounded_by = claim.fact_key
    return result


class ResponseAuditor:
    """
    Extracts action claims from a final answer and checks each one against the
    aggregated facts of the tools executed in the run.
    """

    def audit(self, text: str, results: List[ToolExecutionResult]) -> GroundingAudit:
        risk = highest_risk_level(results)
        audit = GroundingAudit(risk_level=risk)
        if not results:
            audit.warnings.append("No tool results provided for grounding")
            return audit

        facts = aggregate_facts(results)
        claims = extract_claims(text)
        verifications = [verify_claim(claim, facts) for claim in claims]

        audit.claims_extracted = len(claims)
        audit.claims_verified = sum(1 for v in verifications if v.verified)
        audit.contradictions = [v.contradiction for v in verifications if v.contradiction]

        if audit.contradictions and risk in (RiskLevel.CRITICAL, RiskLevel.HIGH):
            audit.warnings.append(
                f"{risk.value}: answer contains {len(audit.contradictions)} claim(s) that contradict tool facts"
            )
        self._log(audit)
        return audit

    def _log(self, audit: GroundingAudit):
        summary = (
            f"[GROUNDING AUDIT] risk={audit.risk_level.value} claims={audit.claims_extracted} "
            f"verified={audit.claims_verified} contradictions={len(audit.contradictions)}"
        )
        if audit.has_contradictions:
            console.warning(summary)
            console.display_error_panel(
                "Grounding contradictions",
                "\n".join(f"• {contradiction}" for contradiction in audit.contradictions),
            )
        else:
            console.debug(summary)
