import re
from typing import Any, List, Optional, Tuple

_SCRIPT_TAG = re.compile(r"<\s*script|</\s*script\s*>", re.IGNORECASE)
# any character but a line terminator, repeated 100+ times
_REPEATED_CHAR = re.compile(r"([^\n\r\u2028\u2029])\1{99,}")
# \t \n \v \f \r are allowed
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0E-\x1F]")
# ECMAScript whitespace and line terminators. str.strip() would also drop
# \x1c-\x1f and \x85 but keep the BOM.
_TRIM_CHARS = (
    " \t\n\v\f\r\u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006"
    "\u2007\u2008\u2009\u200a\u2028\u2029\u202f\u205f\u3000\ufeff"
)


def extract_prompt_text(body: Any) -> str:
    """Join every ``contents[].parts[].text`` string with newlines, trimmed."""
    if not isinstance(body, dict) or not isinstance(body.get("contents"), list):
        return ""
    texts: List[str] = []
    for content in body["contents"]:
        if not isinstance(content, dict) or not isinstance(content.get("parts"), list):
            continue
        for part in content["parts"]:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                texts.append(part["text"])
    return "\n".join(texts).strip(_TRIM_CHARS)


def check_prompt(text: str, max_chars: int) -> Optional[Tuple[str, str]]:
    """Return (code, message) for the first rule ``text`` breaks, else None."""
    if not text:
        return "EMPTY_PROMPT", "Prompt cannot be empty."
    if len(text) > max_chars:
        return "PROMPT_TOO_LONG", f"Prompt too long. Max {max_chars} chars."
    if _SCRIPT_TAG.search(text):
        return "UNSAFE_INPUT", "Unsafe input detected."
    if _REPEATED_CHAR.search(text):
        return "ABUSIVE_PATTERN", "Abusive repeated input detected."
    if _CONTROL_CHARS.search(text):
        return "INVALID_CONTROL_CHARS", "Invalid control characters in input."
    return None
