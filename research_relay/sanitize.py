"""Header-safe string cleanup for secrets and referers."""

import re

_SMART_QUOTES = re.compile(r"[\u2018\u2019\u201c\u201d]")
_NON_ASCII = re.compile(r"[^\x00-\x7f]")


def sanitize(raw: str | None) -> str:
    """Drop smart quotes and non-ASCII characters, then trim whitespace.

    Values pasted from documents often carry curly quotes or stray unicode
    that httpx refuses to encode into a header.
    """
    if not raw:
        return ""
    return _NON_ASCII.sub("", _SMART_QUOTES.sub("", raw)).strip()
