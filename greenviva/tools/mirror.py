"""Remote tip mirror — the whole tip collection kept in one Gmail draft.

The draft is identified by a fixed subject line and its body is a JSON
envelope ``{"tips": [...]}``. Saving always overwrites the full collection;
there is never more than one mirror draft.
"""

import json
import logging
from email import message_from_bytes
from email.policy import default as default_policy

from greenviva import config
from greenviva.tools.gmail import AuthenticationExpired, GmailClient, decode_base64url, encode_base64url
from greenviva.tools.tips import Tip

logger = logging.getLogger(__name__)


def build_draft(tips: list[Tip], subject: str) -> str:
    """Minimal plaintext message holding the JSON envelope, base64url encoded."""
    payload = {"tips": [t.to_dict() for t in tips]}
    email = (
        'Content-Type: text/plain; charset="UTF-8"\n'
        "MIME-Version: 1.0\n"
        f"Subject: {subject}\n"
        "\n"
        f"{json.dumps(payload, indent=2, ensure_ascii=False)}\n"
    )
    return encode_base64url(email)


def _message_text(raw: str) -> str:
    """Body text of a raw draft, undoing any transfer encoding Gmail applied."""
    decoded = decode_base64url(raw)
    try:
        msg = message_from_bytes(decoded.encode("utf-8"), policy=default_policy)
        part = msg.get_body(preferencelist=("plain",)) or msg
        return part.get_content()
    except Exception as e:
        logger.debug("Could not parse draft as MIME, using raw text: %s", e)
        return decoded


def _span(text: str, opening: str, closing: str) -> str | None:
    start, end = text.find(opening), text.rfind(closing)
    if start == -1 or end < start:
        return None
    return text[start:end + 1]


def parse_envelope(text: str) -> list[Tip]:
    """Pull the tip collection out of a draft body.

    Accepts the ``{"tips": [...]}`` envelope, a single tip object, or a bare
    JSON array of tips. Anything else yields an empty list.
    """
    records = None
    obj = _span(text, "{", "}")
    if obj:
        try:
            data = json.loads(obj)
            if isinstance(data, dict) and isinstance(data.get("tips"), list):
                records = data["tips"]
            elif isinstance(data, dict) and "id" in data:
                records = [data]
        except ValueError:
            pass
    if records is None:
        arr = _span(text, "[", "]")
        if arr:
            try:
                data = json.loads(arr)
                if isinstance(data, list):
                    records = data
            except ValueError:
                pass
    if records is None:
        return []

    tips = []
    for record in records:
        try:
            tips.append(Tip.from_dict(record))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed tip in mirror: %s", e)
    return tips


class TipMirror:
    def __init__(self, client: GmailClient, subject: str = config.TIPS_DRAFT_SUBJECT):
        self.client = client
        self.subject = subject

    async def find(self) -> str | None:
        """Id of the mirror draft, or None if it does not exist yet."""
        for draft_id in await self.client.list_drafts(f'subject:"{self.subject}"'):
            draft = await self.client.get_draft(draft_id, fmt="metadata")
            headers = draft.get("message", {}).get("payload", {}).get("headers", [])
            subject = next((h["value"] for h in headers if h["name"].lower() == "subject"), "")
            if subject == self.subject:
                return draft_id
        return None

    async def load(self) -> list[Tip]:
        """Tips stored in the mirror. Empty if missing or unreadable."""
        try:
            draft_id = await self.find()
            if not draft_id:
                logger.info("No tip mirror draft found")
                return []
            draft = await self.client.get_draft(draft_id, fmt="raw")
            raw = draft.get("message", {}).get("raw")
            if not raw:
                return []
            tips = parse_envelope(_message_text(raw))
            logger.info("Loaded %d tips from mirror draft %s", len(tips), draft_id)
            return tips
        except AuthenticationExpired:
            raise
        except Exception as e:
            logger.error("Failed to load tips from mirror: %s", e)
            return []

    async def save(self, tips: list[Tip]) -> None:
        """Overwrite the mirror with the full collection, creating the draft if needed."""
        raw = build_draft(tips, self.subject)
        draft_id = await self.find()
        if draft_id:
            await self.client.update_draft(draft_id, raw)
            logger.info("Updated mirror draft %s with %d tips", draft_id, len(tips))
        else:
            created = await self.client.create_draft(raw)
            logger.info("Created mirror draft %s with %d tips", created.get("id", "?"), len(tips))
