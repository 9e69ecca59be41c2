from grounded_agent.core.grounding import build_result
from grounded_agent.core.response_audit import ResponseAuditor, aggregate_facts, extract_claims, verify_claim
from grounded_agent.models.grounding import MeetingScheduleFacts, RiskLevel, SearchFacts, ToolFamily


def _meeting(**overrides):
    facts = dict(action_completed=True, meeting_created=True, meeting_id="m-1", scheduled_start="2026-10-20T15:00Z")
    facts.update(overrides)
    return build_result(ToolFamily.SCHEDULE_MEETING, True, MeetingScheduleFacts(**facts))


def _search(total):
    facts = SearchFacts(action_completed=True, query_executed=True, total_matching=total, results_returned=total)
    return build_result(ToolFamily.SEARCH, True, facts)


def test_extract_claims_finds_counts_and_actions():
    claims = extract_claims("I scheduled a meeting and found 3 leads. Invites were sent to bob@x.com.")
    keys = [claim.fact_key for claim in claims]
    assert "meeting_created" in keys
    assert "total_matching" in keys
    assert "invites_sent" in keys
    count = next(c for c in claims if c.fact_key == "total_matching")
    assert count.value == 3


def test_aggregate_facts_merges_lists_sums_numbers_and_ands_booleans():
    facts = aggregate_facts([_search(2), _search(3), _meeting(invites_sent=False), _meeting(invites_sent=True)])
    assert facts["total_matching"] == 5
    assert facts["invites_sent"] is False
    assert facts["action_completed"] is True


def test_verify_claim_detects_count_contradiction():
    claim = extract_claims("I found 7 results.")[0]
    verification = verify_claim(claim, {"total_matching": 4})
    assert verification.verified is False
    assert verification.contradiction == "Answer states 7 but fact shows 4"


def test_verify_claim_checks_list_membership():
    claim = next(c for c in extract_claims("Invites were sent to bob@x.com.") if c.fact_key == "invites_sent")
    assert verify_claim(claim, {"invites_sent": ["bob@x.com"]}).verified is True
    assert verify_claim(claim, {"invites_sent": ["eve@x.com"]}).contradiction is not None


def test_audit_reports_contradiction_without_rewriting():
    text = "Meeting scheduled and invites were sent to the team."
    auditor = ResponseAuditor()
    audit = auditor.audit(text, [_meeting(invites_sent=False)])
    assert audit.risk_level is RiskLevel.CRITICAL
    assert audit.has_contradictions
    assert audit.warnings
    assert text == "Meeting scheduled and invites were sent to the team."


def test_audit_of_consistent_answer_has_no_contradictions():
    audit = ResponseAuditor().audit("I found 2 results.", [_search(2)])
    assert audit.claims_extracted == 1
    assert audit.claims_verified == 1
    assert not audit.has_contradictions


def test_audit_without_results_warns():
    audit = ResponseAuditor().audit("Hello", [])
    assert audit.warnings == ["No tool results provided for grounding"]
    assert audit.risk_level is RiskLevel.LOW
