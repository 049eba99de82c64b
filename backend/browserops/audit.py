# backend/browserops/audit.py
"""
Append-only audit log of every automation action.

Each action goes through the ComplianceFilter first. Flags are attached to the
record and, when PII was found, the response data is stored redacted. Flags
never block the write; they raise a warning log line instead.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from browserops.compliance import ComplianceFilter
from browserops.models import AuditRecord
from browserops.schemas import AuditAction

logger = structlog.get_logger(__name__)

PII_WEIGHT = 20
TOS_WEIGHT = 30
ANTI_BOT_WEIGHT = 25


@dataclass
class LogActionResult:
    audit_id: str
    compliance_flags: list[str]
    message: str


@dataclass
class ComplianceReport:
    session_id: str
    total_actions: int
    pii_detected_count: int
    tos_violations_count: int
    anti_bot_detections: int
    rate_limit_warnings: int
    overall_compliance_score: int


def compliance_score(total: int, pii_count: int, tos_count: int, bot_count: int) -> float:
    """100 minus the weighted flag rate, floored at 0. No records scores 100."""
    if total == 0:
        return 100.0
    penalty = (pii_count * PII_WEIGHT + tos_count * TOS_WEIGHT + bot_count * ANTI_BOT_WEIGHT) / total
    return max(0.0, 100 - penalty)


class AuditLog:
    def __init__(self, db: Session, compliance: ComplianceFilter | None = None) -> None:
        self.db = db
        self.compliance = compliance or ComplianceFilter()

    def log_action(
        self,
        session_id: str,
        task_id: str | None,
        user_id: str,
        action: AuditAction,
    ) -> LogActionResult:
        check = self.compliance.perform_compliance_check(
            action.url,
            action.action_type,
            action.metadata or None,
            action.response_data,
        )
        flags = [flag.value for flag in check.flags]

        response_data = action.response_data
        if response_data is not None and check.pii_detected:
            response_data = self.compliance.redact_payload(response_data)

        record = AuditRecord(
            session_id=session_id,
            task_id=task_id,
            user_id=user_id,
            action_type=action.action_type,
            action_description=action.action_description,
            url=action.url,
            element_selector=action.element_selector,
            success=action.success,
            response_data=response_data if response_data is not None else {},
            error=action.error,
            screenshot_ref=action.screenshot_ref,
            duration_ms=action.duration_ms,
            action_metadata=self._safe_metadata(action.metadata, check.pii_detected),
            compliance_flags=flags,
            pii_detected=check.pii_detected,
            pii_fields=check.pii_fields,
            tos_violation_risk=check.tos_violation_risk,
            rate_limit_warning=check.rate_limit_warning,
            anti_bot_detected=check.anti_bot_detected,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)

        if flags:
            logger.warning(
                "compliance_flags",
                audit_id=str(record.id),
                session_id=session_id,
                task_id=task_id,
                action_type=action.action_type,
                flags=flags,
                pii_fields=check.pii_fields,
                tos_reason=check.tos_violation_reason,
            )

        return LogActionResult(
            audit_id=str(record.id),
            compliance_flags=flags,
            message=f"Action logged with {len(flags)} compliance flags",
        )

    def _safe_metadata(self, metadata: dict, pii_detected: bool) -> dict:
        if not metadata:
            return {}
        return self.compliance.redact_payload(metadata) if pii_detected else metadata

    def get_compliance_report(self, session_id: str, user_id: str) -> ComplianceReport:
        stmt = (
            select(AuditRecord)
            .where(AuditRecord.session_id == session_id)
            .where(AuditRecord.user_id == user_id)
        )
        records = list(self.db.execute(stmt).scalars().all())

        pii_count = sum(1 for r in records if r.pii_detected)
        tos_count = sum(1 for r in records if r.tos_violation_risk)
        bot_count = sum(1 for r in records if r.anti_bot_detected)
        rate_count = sum(1 for r in records if r.rate_limit_warning)

        return ComplianceReport(
            session_id=session_id,
            total_actions=len(records),
            pii_detected_count=pii_count,
            tos_violations_count=tos_count,
            anti_bot_detections=bot_count,
            rate_limit_warnings=rate_count,
            overall_compliance_score=round(compliance_score(len(records), pii_count, tos_count, bot_count)),
        )
