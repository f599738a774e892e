import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List

DEFAULT_REPLACEMENT = "REDACTED"
_DEFAULT_PATTERNS = (
    (r"(?i)\b(password|passwd|ftp_pass)=[^&\s]+", r"\1=*****"),
    (r"(?i)redis(s)?://([^:@/\s]*):([^@/\s]+)@", r"redis\1://\2:*****@"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:secret_key|token|secret))\b\s*[:=]\s*([^\s,;&]+)",
        r"\1=REDACTED",
    ),
)
_EXTRA_PATTERNS_ENV = "REDACTION_EXTRA_PATTERNS"
_PASSWORD_PARAM_RE = re.compile(r"password=[^&]+")


@dataclass(frozen=True)
class RedactionResult:
    text: str
    redacted: bool
    replacements: int


def obscure_url_secrets(url: str) -> str:
    """Mask a ``password`` query parameter so the URL can be echoed back safely."""
    return _PASSWORD_PARAM_RE.sub("password=*****", str(url or ""))


def redact(text: str) -> str:
    return redact_with_audit(text).text


def redact_with_audit(text: str) -> RedactionResult:
    value = text or ""
    total = 0
    for regex, replacement in _compiled_patterns():
        value, count = regex.subn(replacement, value)
        total += count
    return RedactionResult(text=value, redacted=total > 0, replacements=total)


@lru_cache(maxsize=2)
def _compiled_patterns() -> List[tuple[re.Pattern[str], str]]:
    items: List[tuple[re.Pattern[str], str]] = [
        (re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS
    ]
    extra_raw = (os.environ.get(_EXTRA_PATTERNS_ENV) or "").strip()
    if not extra_raw:
        return items
    for token in extra_raw.split(";;"):
        pattern = token.strip()
        if not pattern:
            continue
        try:
            items.append((re.compile(pattern), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return items
