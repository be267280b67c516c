"""Environment variable loading and validation."""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _number(name: str, default, cast=int):
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        print(f"Invalid value for {name}: {raw!r} (expected {cast.__name__})", file=sys.stderr)
        sys.exit(1)
    if value < 0:
        print(f"{name} must not be negative (got {raw})", file=sys.stderr)
        sys.exit(1)
    return value


# Gmail
# Payment provider that sends the transfer notifications
SENDER_ADDRESS: str = os.environ.get("GREENVIVA_SENDER", "no-reply@viva.com")
GMAIL_TOKEN_PATH: str = os.environ.get(
    "GMAIL_TOKEN_PATH",
    os.path.join(os.path.dirname(__file__), "..", "token.json"),
)
GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.compose",
]

# Calendar grouping uses the user's local day, not UTC
TIMEZONE: str = os.environ.get("GREENVIVA_TIMEZONE", "Europe/Athens")

# Goal
DAILY_GOAL: float = _number("DAILY_GOAL", 40.0, float)

# Period cache (seconds)
DAILY_CACHE_TTL: int = _number("DAILY_CACHE_TTL", 300)
MONTHLY_CACHE_TTL: int = _number("MONTHLY_CACHE_TTL", 24 * 60 * 60)

# Batch fetch pipeline
FETCH_BATCH_SIZE: int = _number("FETCH_BATCH_SIZE", 10) or 10
FETCH_MAX_RETRIES: int = _number("FETCH_MAX_RETRIES", 3)
FETCH_BATCH_DELAY: float = _number("FETCH_BATCH_DELAY", 0.5, float)

# Sessions end after this many idle seconds
SESSION_IDLE_TIMEOUT: float = _number("SESSION_IDLE_TIMEOUT", 300.0, float)

# Tip mirror
TIPS_DRAFT_SUBJECT: str = os.environ.get("TIPS_DRAFT_SUBJECT", "[GreenViva] Tips Sync")

# Local state (Docker vs local dev)
DATA_DIR = Path("/app/data") if Path("/app/data").exists() else Path("data")
