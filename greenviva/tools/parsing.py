"""Transfer notification parsing — sender/amount extraction and Date header handling.

Two extraction profiles run over the decoded body:

- label: ``From: <sender>`` and ``Amount: €<n>`` lines (English or Greek
  labels). Both labels are required.
- symbol: a euro sign directly before or after a decimal number. Runs only
  when the label profile fails, and does not need a sender; the ``From``
  line is still used if one is present.

A body that matches neither profile yields None and the message is skipped.
"""

import html
import logging
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

_SENDER_RE = re.compile(r"^[ \t]*(?:From|Από)[ \t]*:[ \t]*(.+?)[ \t]*$", re.IGNORECASE | re.MULTILINE)
_AMOUNT_LABEL_RE = re.compile(
    r"(?:Amount|Ποσό)\s*:\s*€?\s*(\d+(?:[.,]\d{1,2})?)(?!\d)", re.IGNORECASE
)
_AMOUNT_SYMBOL_RE = re.compile(r"€\s?(\d+[.,]\d+)|(\d+[.,]\d+)\s?€")


@dataclass(frozen=True)
class Transfer:
    """One payment notification."""
    sender: str
    amount: float
    timestamp: str = ""  # ISO datetime, local timezone

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Transfer":
        return cls(
            sender=data.get("sender", ""),
            amount=float(data.get("amount", 0)),
            timestamp=data.get("timestamp", ""),
        )


def strip_html(text: str) -> str:
    """Strip HTML tags and collapse whitespace, keeping line structure.

    Plain-text bodies pass through with only whitespace normalized.
    """
    if "<" in text and ">" in text:
        text = re.sub(r"<style[^>]*>.*?</style>", " ", text, flags=re.DOTALL | re.IGNORECASE)
        text = re.sub(r"<script[^>]*>.*?</script>", " ", text, flags=re.DOTALL | re.IGNORECASE)
        text = re.sub(r"<br[^>]*>", "\n", text, flags=re.IGNORECASE)
        text = re.sub(r"</(tr|p|div|td|li|h[1-6])>", "\n", text, flags=re.IGNORECASE)
        text = re.sub(r"<[^>]+>", " ", text)
    text = html.unescape(text).replace("\xa0", " ")
    lines = [" ".join(line.split()) for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def _to_amount(numeral: str) -> float:
    return round(float(numeral.replace(",", ".")), 2)


def parse_amount(text: str) -> float | None:
    """Symbol profile: first euro amount in the text, comma normalized to dot."""
    match = _AMOUNT_SYMBOL_RE.search(text)
    if not match:
        return None
    return _to_amount(match.group(1) or match.group(2))


def parse_transfer(body: str) -> Transfer | None:
    """Extract sender and amount from a decoded message body.

    The timestamp is left empty; the caller fills it from the Date header.
    """
    if not body:
        return None
    text = strip_html(body)

    sender_match = _SENDER_RE.search(text)
    sender = sender_match.group(1) if sender_match else ""

    amount_match = _AMOUNT_LABEL_RE.search(text)
    if sender_match and amount_match:
        return Transfer(sender=sender, amount=_to_amount(amount_match.group(1)))

    amount = parse_amount(text)
    if amount is None:
        logger.debug("No amount found in body: %r", text[:200])
        return None
    return Transfer(sender=sender, amount=amount)


def parse_email_date(value: str, tz: str) -> datetime | None:
    """Parse an RFC 2822 Date header into the given local timezone.

    Returns None for a missing or malformed header.
    """
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        logger.debug("Unparseable Date header: %r", value)
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(ZoneInfo(tz))
