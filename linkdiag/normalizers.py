"""
Text normalization for vendor CLI output and ONU identifiers.

Vendor terminals color-code severities and redraw pager prompts, and each
vendor writes ONU identifiers its own way ("gpon-olt_1/1/3:116",
"gpon-onu_1/2/1:4", "1/1/3/116"). Everything that parses or compares
device text goes through these helpers first.
"""

import re

# CSI (colors, cursor moves), OSC (window titles) and two-byte escapes
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_BACKSPACE_RE = re.compile(r"[^\n]\x08")

_PAGER_RE = re.compile(r"-+\s*\(?more\)?[^\n]*?-+|<-+\s*more\s*-+>|press any key to continue", re.IGNORECASE)

_ONU_PREFIX_RE = re.compile(
    r"^(?:(?:x?gpon|epon)-(?:olt|onu)_|(?:x?gpon|epon)-|olt_|onu_)+",
    re.IGNORECASE,
)


def strip_ansi(text: str) -> str:
    """Remove escape sequences, carriage returns and control characters."""
    if not text:
        return ""
    text = _ANSI_RE.sub("", text)
    # Apply backspaces the way a terminal would ("abc\x08\x08" -> "a")
    while "\x08" in text:
        updated = _BACKSPACE_RE.sub("", text)
        if updated == text:
            break
        text = updated
    text = text.replace("\r\n", "\n").replace("\r", "")
    return _CONTROL_RE.sub("", text)


def contains_pager_prompt(text: str) -> bool:
    return bool(_PAGER_RE.search(text or ""))


def strip_pager_prompts(text: str) -> str:
    return _PAGER_RE.sub("", text or "")


def normalize_onu_id(raw: str) -> str:
    """Reduce any vendor ONU identifier to "a/b/c/d" form.

    Prefixes such as "gpon-olt_" are dropped, ":" and whitespace become "/",
    and repeated or edge slashes are collapsed. Idempotent.

    >>> normalize_onu_id("gpon-olt_1/1/3:116")
    '1/1/3/116'
    """
    value = (raw or "").strip()
    previous = None
    while value != previous:
        previous = value
        value = _ONU_PREFIX_RE.sub("", value)
        value = re.sub(r"[:\s]+", "/", value)
        value = re.sub(r"/{2,}", "/", value)
        value = value.strip("/")
    return value
