import re
from pathlib import Path
from typing import Dict, List, Optional

from cache_dropin.domain.dropin import DropinRecord

HEADER_READ_BYTES = 8192

DEFAULT_HEADERS = {
    "name": "Plugin Name",
    "uri": "Plugin URI",
    "version": "Version",
    "description": "Description",
    "author": "Author",
}

_COMMENT_TAIL_RE = re.compile(r"\s*(?:\*/|\?>).*")
_CANON_SEPARATORS_RE = re.compile(r"[-_+]")
_ALNUM_BOUNDARY_RE = re.compile(r"(?<=\d)(?=[^\d.])|(?<=[^\d.])(?=\d)")

# Rank of the special words a version field may contain; plain numbers rank as "#".
_SPECIAL_FORMS = {
    "dev": 0,
    "alpha": 1,
    "a": 1,
    "beta": 2,
    "b": 2,
    "rc": 3,
    "#": 4,
    "pl": 5,
    "p": 5,
}


def parse_header(text: str, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Extract ``Key: value`` header lines from the head of a drop-in file.

    Matching is case-insensitive, tolerates leading comment decorations and an
    opening tag on the same line, and strips trailing comment terminators.
    Missing headers come back as empty strings.
    """
    wanted = headers or DEFAULT_HEADERS
    content = (text or "").replace("\r", "\n")
    out: Dict[str, str] = {}
    for field_name, label in wanted.items():
        pattern = re.compile(
            r"^(?:[ \t]*<\?php)?[ \t/*#@]*" + re.escape(label) + r":(.*)$",
            re.IGNORECASE | re.MULTILINE,
        )
        match = pattern.search(content)
        if match and match.group(1):
            out[field_name] = _COMMENT_TAIL_RE.sub("", match.group(1)).strip()
        else:
            out[field_name] = ""
    return out


def read_header_text(path: Path) -> str:
    with Path(path).open("rb") as handle:
        raw = handle.read(HEADER_READ_BYTES)
    return raw.decode("utf-8", errors="replace")


def load_record(path: Path) -> DropinRecord:
    """Read the declared identity of a drop-in file. Raises OSError if unreadable."""
    return record_from_text(read_header_text(path))


def record_from_text(text: str) -> DropinRecord:
    data = parse_header(text)
    return DropinRecord(uri=data["uri"], version=data["version"])


def _canonical_parts(version: str) -> List[str]:
    value = _CANON_SEPARATORS_RE.sub(".", (version or "").strip())
    value = _ALNUM_BOUNDARY_RE.sub(".", value)
    return [part for part in value.split(".") if part]


def _form_rank(part: str) -> int:
    if part == "#" or part.isdigit():
        return _SPECIAL_FORMS["#"]
    lowered = part.lower()
    for name, rank in _SPECIAL_FORMS.items():
        if name != "#" and lowered.startswith(name):
            return rank
    return -1


def _compare_part(left: str, right: str) -> int:
    if left.isdigit() and right.isdigit():
        a, b = int(left), int(right)
    else:
        a, b = _form_rank(left), _form_rank(right)
    return (a > b) - (a < b)


def compare_versions(left: str, right: str) -> int:
    """Compare two version strings field by field; returns -1, 0 or 1."""
    a_parts = _canonical_parts(left)
    b_parts = _canonical_parts(right)
    for a, b in zip(a_parts, b_parts):
        result = _compare_part(a, b)
        if result:
            return result
    if len(a_parts) == len(b_parts):
        return 0
    # An extra numeric field makes a version newer; an extra pre-release word
    # ranks against the implicit "#" of the shorter version.
    if len(a_parts) > len(b_parts):
        extra = a_parts[len(b_parts)]
        return 1 if extra.isdigit() else _compare_part(extra, "#")
    extra = b_parts[len(a_parts)]
    return -1 if extra.isdigit() else _compare_part("#", extra)


def version_less_than(left: str, right: str) -> bool:
    return compare_versions(left, right) < 0


_CACHE_API_RE = re.compile(r"^\s*function\s+wp_cache_get\s*\(", re.IGNORECASE | re.MULTILINE)


def defines_cache_api(path: Path) -> bool:
    """True when the drop-in file declares the object cache functions, not just a header."""
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return bool(_CACHE_API_RE.search(text))
