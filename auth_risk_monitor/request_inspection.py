from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Pattern, Sequence

SQL_INJECTION_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"union\s+select", re.IGNORECASE),
    re.compile(r"or\s+1\s*=\s*1", re.IGNORECASE),
    re.compile(r"drop\s+table", re.IGNORECASE),
    re.compile(r"insert\s+into", re.IGNORECASE),
    re.compile(r"delete\s+from", re.IGNORECASE),
)
XSS_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"onerror\s*=", re.IGNORECASE),
    re.compile(r"onload\s*=", re.IGNORECASE),
)
BOT_PATTERNS: Sequence[Pattern[str]] = (
    re.compile(r"bot", re.IGNORECASE),
    re.compile(r"crawler", re.IGNORECASE),
    re.compile(r"spider", re.IGNORECASE),
    re.compile(r"scraper", re.IGNORECASE),
)


@dataclass(slots=True)
class RequestFinding:
    severity: str
    description: str
    kind: str


def _matches_any(patterns: Sequence[Pattern[str]], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


def detect_sql_injection(payload: str) -> bool:
    return _matches_any(SQL_INJECTION_PATTERNS, payload)


def detect_xss(payload: str) -> bool:
    return _matches_any(XSS_PATTERNS, payload)


def detect_bot(user_agent: str) -> bool:
    return _matches_any(BOT_PATTERNS, user_agent)


def inspect_payload(payload: str, user_agent: str) -> List[RequestFinding]:
    """Pattern checks run on every request; this is a tripwire, not a WAF."""
    findings: List[RequestFinding] = []
    if detect_sql_injection(payload):
        findings.append(RequestFinding("high", "SQL injection attempt detected", "sql_injection"))
    if detect_xss(payload):
        findings.append(RequestFinding("medium", "XSS attempt detected", "xss"))
    if detect_bot(user_agent):
        findings.append(RequestFinding("low", "Bot activity detected", "bot"))
    return findings
