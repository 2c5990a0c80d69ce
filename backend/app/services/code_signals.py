"""
Code signal scanning: regex pattern libraries for security-relevant code.

Rules use these to look for evidence of authentication, MFA, encryption,
logging, access control, CI security scanning and hardcoded secrets.
Matched secret values are never stored; evidence carries a redacted line.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

MAX_MATCHES_PER_FILE = 20
EVIDENCE_CHARS = 120


def _compile(*patterns: str) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# ── Pattern libraries ─────────────────────────────────────────────────────────

AUTH_PATTERNS = {
    "jwt": _compile(r"jwt\.(sign|verify|encode|decode)\(", r"jsonwebtoken", r"python-jose|from jose import", r"Bearer\s+.*token"),
    "oauth": _compile(r"\boauth2?\b", r"authorization_code", r"passport[-.]\w*oauth", r"authlib"),
    "session": _compile(r"express-session", r"req\.session", r"cookie-session", r"SessionMiddleware", r"flask_login|login_required"),
    "saml_oidc": _compile(r"\bsaml2?\b", r"openid[-_ ]?connect|\boidc\b"),
}

MFA_PATTERNS = _compile(
    r"\btotp\b", r"two[-_ ]?factor", r"\b2fa\b", r"\bmfa\b", r"authenticator", r"speakeasy", r"otplib", r"pyotp", r"webauthn",
)

ACCESS_CONTROL_PATTERNS = _compile(
    r"\brbac\b", r"role[-_ ]?based", r"has_?role\(", r"check_?role\(", r"require_?permission", r"permission_required",
    r"@requires?\(", r"is_?authorized", r"require_?auth", r"is_?authenticated", r"Depends\(require",
)

ENCRYPTION_AT_REST_PATTERNS = _compile(
    r"createCipher(iv)?\(", r"\bAES\b", r"\bbcrypt\b", r"\bscrypt\b", r"\bargon2\b", r"\bpbkdf2\b",
    r"Fernet", r"\.encrypt\(", r"kms", r"pgcrypto",
)

ENCRYPTION_IN_TRANSIT_PATTERNS = _compile(
    r"https://", r"\btls\b", r"ssl_?context", r"createSecureServer", r"Strict-Transport-Security", r"ssl_certificate", r"\bhsts\b",
)

LOGGING_PATTERNS = _compile(
    r"\bwinston\b", r"\bpino\b", r"\bbunyan\b", r"logging\.getLogger", r"\blogger\.(info|warn|warning|error|debug)\(",
    r"\bstructlog\b", r"\bzap\.", r"\blogrus\b", r"\bslf4j\b",
)

AUDIT_LOG_PATTERNS = _compile(r"audit[-_ ]?log", r"audit_?service", r"log_?audit", r"audit_?trail", r"AuditLog")

SECURITY_SCANNER_PATTERNS = _compile(
    r"codeql", r"\bsnyk\b", r"\btrivy\b", r"\bsemgrep\b", r"\bbandit\b", r"npm audit", r"pip-audit", r"\bgitleaks\b",
    r"trufflehog", r"dependency-review-action", r"sonar", r"\bgrype\b", r"owasp",
)

SECRET_PATTERNS: list[tuple[str, re.Pattern, str]] = [
    ("private_key", re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----"), "critical"),
    ("aws_access_key", re.compile(r"\bAKIA[0-9A-Z]{16}\b"), "critical"),
    ("api_key", re.compile(r"api[_-]?key\s*[:=]\s*['\"][A-Za-z0-9_\-]{20,}['\"]", re.IGNORECASE), "high"),
    ("password", re.compile(r"passw(or)?d\s*[:=]\s*['\"][^'\"\s]{8,}['\"]", re.IGNORECASE), "high"),
    ("secret", re.compile(r"secret(_key)?\s*[:=]\s*['\"][A-Za-z0-9_\-]{20,}['\"]", re.IGNORECASE), "high"),
    ("token", re.compile(r"token\s*[:=]\s*['\"][A-Za-z0-9_\-\.]{20,}['\"]", re.IGNORECASE), "medium"),
]


@dataclass
class SignalMatch:
    path: str
    line: int
    text: str

    def to_dict(self) -> dict:
        return {"path": self.path, "line": self.line, "text": self.text}


# ── Scanning ──────────────────────────────────────────────────────────────────

def read_text_file(path: Path, max_bytes: int) -> str | None:
    """Read a file as text. Returns None for oversized or binary files."""
    try:
        if path.stat().st_size > max_bytes:
            return None
        raw = path.read_bytes()
    except OSError:
        return None
    if b"\x00" in raw[:8192]:
        return None
    return raw.decode("utf-8", errors="replace")


def find_matches(path: str, content: str, patterns: list[re.Pattern]) -> list[SignalMatch]:
    matches: list[SignalMatch] = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        if any(p.search(line) for p in patterns):
            matches.append(SignalMatch(path, lineno, line.strip()[:EVIDENCE_CHARS]))
            if len(matches) >= MAX_MATCHES_PER_FILE:
                break
    return matches


def redact(line: str, match: re.Match) -> str:
    start, end = match.span()
    return (line[:start] + "[REDACTED]" + line[end:]).strip()[:EVIDENCE_CHARS]


def find_secrets(path: str, content: str) -> list[dict]:
    """Return redacted secret hits: [{path, line, type, severity, text}]."""
    hits: list[dict] = []
    for lineno, line in enumerate(content.splitlines(), start=1):
        for secret_type, pattern, severity in SECRET_PATTERNS:
            m = pattern.search(line)
            if m:
                hits.append({
                    "path": path,
                    "line": lineno,
                    "type": secret_type,
                    "severity": severity,
                    "text": redact(line, m),
                })
                break
        if len(hits) >= MAX_MATCHES_PER_FILE:
            break
    return hits
