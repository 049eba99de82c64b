# backend/browserops/compliance.py
"""
Compliance checks applied to every action before it is written to the audit log.

Checks are regex heuristics over a small, immutable rule set:
- PII: email, phone, SSN, credit card, API-key-like tokens, password assignments.
- Terms of Service: per-domain allow/restrict lists. Unknown domains are a soft
  fail (risk 30, not a violation) so they are never auto-blocked.
- Anti-bot: substring signatures (captcha, cloudflare, ...) in response data.
- Rate limit: scraping-style actions on a domain with known restrictions.

All flags are advisory. They are recorded and alerted on, but nothing here
stops an action from running or being persisted.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import urlparse


class ComplianceFlag(str, enum.Enum):
    PII_DETECTED = "PII_DETECTED"
    TOS_VIOLATION_RISK = "TOS_VIOLATION_RISK"
    RATE_LIMIT_WARNING = "RATE_LIMIT_WARNING"
    ANTI_BOT_DETECTED = "ANTI_BOT_DETECTED"


@dataclass(frozen=True)
class PIIPattern:
    category: str
    pattern: re.Pattern[str]
    replacement: str


@dataclass(frozen=True)
class DomainRule:
    allowed_actions: frozenset[str] = frozenset()
    restricted_actions: frozenset[str] = frozenset()
    rate_limit_per_minute: int = 0


# Redaction runs in this order. Placeholders contain no digits, '@' or long
# alphanumeric runs, so no pattern can match another pattern's placeholder.
DEFAULT_PII_PATTERNS: tuple[PIIPattern, ...] = (
    PIIPattern("credit_card", re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"), "[REDACTED_CC]"),
    PIIPattern("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[REDACTED_SSN]"),
    PIIPattern("email", re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[REDACTED_EMAIL]"),
    PIIPattern("phone", re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b"), "[REDACTED_PHONE]"),
    PIIPattern(
        "api_key", re.compile(r"(?<![A-Za-z0-9_-])[A-Za-z0-9_-]{32,}(?![A-Za-z0-9_-])"), "[REDACTED_KEY]"
    ),
    PIIPattern(
        "password",
        re.compile(r"\b(password|passwd|pwd)(['\"]?\s*[:=]\s*['\"]?)([^'\"\s,}]+)", re.IGNORECASE),
        r"\1\2[REDACTED_PASSWORD]",
    ),
)

# Reported in this order by detect_pii.
PII_CATEGORY_ORDER = ("email", "phone", "ssn", "credit_card", "api_key", "password")

PASSWORD_KEYS = ("password", "passwd", "pwd")

DEFAULT_TOS_RULES: Mapping[str, DomainRule] = MappingProxyType({
    "wordpress.com": DomainRule(
        allowed_actions=frozenset({"navigate", "read_content", "create_post", "edit_post", "publish_post"}),
        restricted_actions=frozenset({"modify_user_permissions", "delete_site", "inject_js"}),
        rate_limit_per_minute=30,
    ),
    "tradingview.com": DomainRule(
        allowed_actions=frozenset({"navigate", "read_content", "screenshot"}),
        restricted_actions=frozenset({"place_order", "modify_settings", "scrape_data"}),
        rate_limit_per_minute=10,
    ),
    "medium.com": DomainRule(
        allowed_actions=frozenset({"navigate", "read_content", "publish_article"}),
        restricted_actions=frozenset({"scrape_articles", "modify_other_users", "inject_js"}),
        rate_limit_per_minute=20,
    ),
    "linkedin.com": DomainRule(
        allowed_actions=frozenset({"navigate", "read_content", "post_content"}),
        restricted_actions=frozenset({"scrape_data", "automate_messages", "modify_profiles"}),
        rate_limit_per_minute=15,
    ),
})

DEFAULT_ANTI_BOT_SIGNATURES = (
    "cloudflare",
    "challenge",
    "robot",
    "captcha",
    "recaptcha",
    "403 forbidden",
    "429 too many requests",
    "blocked",
    "verify",
)


@dataclass(frozen=True)
class ComplianceRules:
    pii_patterns: tuple[PIIPattern, ...] = DEFAULT_PII_PATTERNS
    tos_rules: Mapping[str, DomainRule] = field(default_factory=lambda: DEFAULT_TOS_RULES)
    anti_bot_signatures: tuple[str, ...] = DEFAULT_ANTI_BOT_SIGNATURES
    rate_limited_actions: frozenset[str] = frozenset({"extract", "scrape"})
    pii_scan_limit: int = 1000


DEFAULT_RULES = ComplianceRules()

# Confidence scores reported alongside each flag.
PII_CONFIDENCE = 95
ANTI_BOT_CONFIDENCE = 90
RATE_LIMIT_CONFIDENCE = 60
UNKNOWN_DOMAIN_RISK = 30


@dataclass
class TOSCheck:
    is_violation: bool
    reason: str
    risk_score: int


@dataclass
class AntiBotCheck:
    detected: bool
    reason: str = ""
    signature: str | None = None


@dataclass
class ComplianceCheck:
    domain: str | None
    pii_detected: bool = False
    pii_fields: list[str] = field(default_factory=list)
    tos_violation_risk: bool = False
    tos_violation_reason: str | None = None
    tos_risk_score: int = 0
    rate_limit_warning: bool = False
    anti_bot_detected: bool = False
    anti_bot_reason: str | None = None
    confidence_scores: dict[str, int] = field(default_factory=dict)

    @property
    def flags(self) -> list[ComplianceFlag]:
        flags = []
        if self.pii_detected:
            flags.append(ComplianceFlag.PII_DETECTED)
        if self.tos_violation_risk:
            flags.append(ComplianceFlag.TOS_VIOLATION_RISK)
        if self.rate_limit_warning:
            flags.append(ComplianceFlag.RATE_LIMIT_WARNING)
        if self.anti_bot_detected:
            flags.append(ComplianceFlag.ANTI_BOT_DETECTED)
        return flags


def _to_text(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, default=str, ensure_ascii=False)


def domain_of(url_or_domain: str | None) -> str | None:
    """`https://www.medium.com/@me` -> `medium.com`; bare domains pass through."""
    if not url_or_domain:
        return None
    value = url_or_domain.strip()
    if "://" not in value:
        value = "//" + value
    host = urlparse(value).hostname
    if not host:
        return None
    if host.startswith("www."):
        host = host[4:]
    return host


class ComplianceFilter:
    def __init__(self, rules: ComplianceRules = DEFAULT_RULES) -> None:
        self.rules = rules
        self._by_category = {p.category: p for p in rules.pii_patterns}

    def rule_for(self, domain: str | None) -> DomainRule | None:
        """Exact match first, then parent domains (`app.linkedin.com` -> `linkedin.com`)."""
        if not domain:
            return None
        parts = domain.split(".")
        for i in range(len(parts) - 1):
            rule = self.rules.tos_rules.get(".".join(parts[i:]))
            if rule is not None:
                return rule
        return None

    def detect_pii(self, payload: Any) -> list[str]:
        if payload is None:
            return []
        text = _to_text(payload)[: self.rules.pii_scan_limit]
        return [
            category
            for category in PII_CATEGORY_ORDER
            if category in self._by_category and self._by_category[category].pattern.search(text)
        ]

    def check_tos_violation(self, domain: str | None, action_type: str) -> TOSCheck:
        rule = self.rule_for(domain_of(domain))
        if rule is None:
            return TOSCheck(False, "Unknown domain - manual review recommended", UNKNOWN_DOMAIN_RISK)

        if action_type in rule.restricted_actions:
            return TOSCheck(True, f"Action '{action_type}' is restricted on {domain}", 100)

        if rule.allowed_actions and action_type not in rule.allowed_actions:
            return TOSCheck(True, f"Action '{action_type}' not in allowed list for {domain}", 80)

        return TOSCheck(False, "Action allowed by TOS", 0)

    def detect_anti_bot_signatures(self, response_data: Any) -> AntiBotCheck:
        if response_data is None:
            return AntiBotCheck(False)
        text = _to_text(response_data).lower()
        for signature in self.rules.anti_bot_signatures:
            if signature in text:
                return AntiBotCheck(True, f"Anti-bot signature detected: {signature}", signature)
        return AntiBotCheck(False)

    def perform_compliance_check(
        self,
        domain: str | None,
        action_type: str,
        action_data: Any = None,
        response_data: Any = None,
    ) -> ComplianceCheck:
        normalized = domain_of(domain)
        check = ComplianceCheck(domain=normalized)

        pii_fields = self.detect_pii(action_data)
        for category in self.detect_pii(response_data):
            if category not in pii_fields:
                pii_fields.append(category)
        if pii_fields:
            check.pii_detected = True
            check.pii_fields = [c for c in PII_CATEGORY_ORDER if c in pii_fields]
            check.confidence_scores["pii_detection"] = PII_CONFIDENCE

        tos = self.check_tos_violation(normalized, action_type)
        check.tos_risk_score = tos.risk_score
        if tos.is_violation:
            check.tos_violation_risk = True
            check.tos_violation_reason = tos.reason
            check.confidence_scores["tos_violation"] = tos.risk_score

        anti_bot = self.detect_anti_bot_signatures(response_data)
        if anti_bot.detected:
            check.anti_bot_detected = True
            check.anti_bot_reason = anti_bot.reason
            check.confidence_scores["anti_bot"] = ANTI_BOT_CONFIDENCE

        if self.rule_for(normalized) is not None and action_type in self.rules.rate_limited_actions:
            check.rate_limit_warning = True
            check.confidence_scores["rate_limit"] = RATE_LIMIT_CONFIDENCE

        return check

    def redact_pii(self, text: str) -> str:
        redacted = text
        for pii in self.rules.pii_patterns:
            redacted = pii.pattern.sub(pii.replacement, redacted)
        return redacted

    def redact_payload(self, data: Any) -> Any:
        """
        Redact a JSON-like structure leaf by leaf, so the result is still valid JSON.

        Numbers that match a PII pattern (e.g. a bare phone number) become redacted
        strings; values stored under password-like keys are replaced outright.
        """
        if isinstance(data, str):
            return self.redact_pii(data)
        if isinstance(data, bool) or data is None:
            return data
        if isinstance(data, (int, float)):
            text = str(data)
            redacted = self.redact_pii(text)
            return data if redacted == text else redacted
        if isinstance(data, dict):
            out = {}
            for key, value in data.items():
                safe_key = self.redact_pii(key) if isinstance(key, str) else key
                if isinstance(key, str) and key.lower() in PASSWORD_KEYS and value is not None:
                    out[safe_key] = "[REDACTED_PASSWORD]"
                else:
                    out[safe_key] = self.redact_payload(value)
            return out
        if isinstance(data, (list, tuple)):
            return [self.redact_payload(item) for item in data]
        return self.redact_pii(str(data))
