"""
Utility functions for the automation engine.

Includes:
- UTC datetime helpers
- HTML to text conversion for email fallbacks
- Money formatting
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

_TAG_RE = re.compile(r"<[^>]*>")


def utcnow() -> datetime:
    """Return the current UTC time as a **naive** datetime.

    Timestamp columns are ``TIMESTAMP WITHOUT TIME ZONE``, so all
    comparisons must also be naive-UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def strip_html(html: str) -> str:
    """Strip tags from an HTML body to produce a plain-text fallback."""
    if not html:
        return ""
    return _TAG_RE.sub("", html)


def format_money(amount: Any, currency_symbol: str = "$") -> str:
    """
    Format a numeric amount like ``$1,234.50``.

    Args:
        amount: Number or numeric string; None renders as zero

    Returns:
        Formatted money string, or ``str(amount)`` if not numeric
    """
    if amount is None:
        amount = 0
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return str(amount)
    sign = "-" if value < 0 else ""
    return f"{sign}{currency_symbol}{abs(value):,.2f}"


def to_float(value: Any) -> Optional[float]:
    """Coerce a value (``"$1,234.50"`` included) to float; None when not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(str(value).strip().replace(",", "").lstrip("$"))
    except (TypeError, ValueError):
        return None
    if result != result:  # NaN
        return None
    return result
