from __future__ import annotations

import uuid

from sqlalchemy import select

from browserops.audit import AuditLog, compliance_score
from browserops.compliance import ComplianceFilter
from browserops.models import AuditRecord
from browserops.schemas import AuditAction


def test_log_action_redacts_response_data(db):
    audit = AuditLog(db)

    result = audit.log_action(
        "session-1",
        "task-1",
        "user-1",
        AuditAction(
            action_type="extract",
            url="https://example.org/contact",
            response_data={"contacts": ["a@b.com", "555-123-4567"], "total": 2},
            duration_ms=12,
        ),
    )

    assert result.compliance_flags == ["PII_DETECTED"]
    assert result.message == "Action logged with 1 compliance flags"

    record = db.get(AuditRecord, uuid.UUID(result.audit_id))
    assert record.pii_detected is True
    assert record.pii_fields == ["email", "phone"]
    assert record.response_data == {"contacts": ["[REDACTED_EMAIL]", "[REDACTED_PHONE]"], "total": 2}


def test_non_ascii_text_is_scanned_as_stored(db):
    audit = AuditLog(db)

    result = audit.log_action(
        "session-1",
        "task-1",
        "user-1",
        AuditAction(
            action_type="extract",
            response_data={"contact": "josé@example.com", "backup": "b@c.org"},
        ),
    )

    record = db.get(AuditRecord, uuid.UUID(result.audit_id))
    assert result.compliance_flags == ["PII_DETECTED"]
    assert record.response_data == {"contact": "josé@example.com", "backup": "[REDACTED_EMAIL]"}
    assert ComplianceFilter().detect_pii(record.response_data) == []


def test_pii_in_metadata_is_flagged_and_redacted(db):
    audit = AuditLog(db)

    result = audit.log_action(
        "session-1",
        None,
        "user-1",
        AuditAction(action_type="input", metadata={"typed": "a@b.com"}),
    )

    record = db.execute(select(AuditRecord)).scalar_one()
    assert "PII_DETECTED" in result.compliance_flags
    assert record.action_metadata == {"typed": "[REDACTED_EMAIL]"}


def test_flags_never_block_persistence(db):
    audit = AuditLog(db)

    result = audit.log_action(
        "session-1",
        "task-1",
        "user-1",
        AuditAction(
            action_type="place_order",
            url="https://www.tradingview.com/chart",
            response_data={"page": "captcha required"},
            success=False,
            error="blocked",
        ),
    )

    assert set(result.compliance_flags) == {"TOS_VIOLATION_RISK", "ANTI_BOT_DETECTED"}
    assert db.execute(select(AuditRecord)).scalar_one().tos_violation_risk is True


def test_compliance_score():
    assert compliance_score(0, 0, 0, 0) == 100
    assert compliance_score(10, 2, 1, 0) == 93
    assert compliance_score(1, 1, 1, 1) == 25
    assert compliance_score(1, 3, 3, 3) == 0


def test_compliance_report_counts_flags(db):
    audit = AuditLog(db)
    for i in range(10):
        db.add(AuditRecord(
            session_id="session-1",
            user_id="user-1",
            action_type="navigate",
            pii_detected=i < 2,
            tos_violation_risk=i == 2,
            rate_limit_warning=i == 3,
        ))
    db.add(AuditRecord(session_id="session-1", user_id="someone-else", action_type="navigate", pii_detected=True))
    db.commit()

    report = audit.get_compliance_report("session-1", "user-1")

    assert report.total_actions == 10
    assert report.pii_detected_count == 2
    assert report.tos_violations_count == 1
    assert report.anti_bot_detections == 0
    assert report.rate_limit_warnings == 1
    assert report.overall_compliance_score == 93


def test_empty_session_scores_100(db):
    report = AuditLog(db).get_compliance_report("nobody", "user-1")
    assert report.total_actions == 0
    assert report.overall_compliance_score == 100
