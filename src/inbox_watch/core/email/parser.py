"""Decoding of raw RFC822 messages into ``MessageEnvelope`` objects."""

import email
import re
from datetime import datetime, timedelta, timezone
from email import policy
from email.header import decode_header, make_header
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import List, Optional

from inbox_watch.core.models import MessageEnvelope
from inbox_watch.core.models.message import IMAP_MONTHS
from inbox_watch.utils.errors import ErrorClassifier, FailureCause
from inbox_watch.utils.logging import get_logger

logger = get_logger(__name__)

INTERNALDATE_RE = re.compile(
    r"^\s*(\d{1,2})-([A-Za-z]{3})-(\d{4}) (\d{2}):(\d{2}):(\d{2}) ([+-])(\d{2})(\d{2})$"
)

TEXT_SUBTYPES = ("plain", "html")


class EmailParser:
    """Parse MIME email messages into envelopes carrying decoded text."""

    @staticmethod
    def parse_from_bytes(
        raw_email: bytes, uid: int, arrived_at: Optional[datetime] = None
    ) -> MessageEnvelope:
        """Parse raw email bytes into a ``MessageEnvelope``.

        Args:
            raw_email: RFC822 message bytes
            uid: UID the message was fetched under
            arrived_at: Server INTERNALDATE; falls back to the Date header

        Raises:
            InboxWatchError: Parse error if the message cannot be decoded
        """
        try:
            message = email.message_from_bytes(bytes(raw_email), policy=policy.default)
            body = EmailParser.extract_body_text(message)
            subject = EmailParser.decode_email_header(message.get("Subject", ""))
            sender = EmailParser.decode_email_header(message.get("From", ""))
            date_header = message.get("Date")

        except (LookupError, UnicodeError, ValueError, TypeError, AttributeError) as e:
            raise ErrorClassifier.error(
                FailureCause.MALFORMED_MESSAGE,
                f"Failed to decode message {uid}: {e}",
                source=e,
                uid=uid,
            ) from e

        if arrived_at is None:
            arrived_at = EmailParser.parse_email_date(date_header)

        return MessageEnvelope(
            uid=uid,
            arrived_at=arrived_at,
            body=body,
            subject=subject,
            sender=sender,
        )

    @staticmethod
    def extract_body_text(message: EmailMessage) -> str:
        """Collect the text parts of a message, plain text before HTML.

        Both are kept so that link matchers can see ``href`` targets that only
        appear in the HTML alternative.
        """
        if not message.is_multipart():
            return EmailParser._part_text(message)

        texts: List[str] = []
        for subtype in TEXT_SUBTYPES:
            for part in message.walk():
                if part.is_multipart() or part.get_content_maintype() != "text":
                    continue
                if part.get_content_subtype() != subtype:
                    continue
                if part.get_content_disposition() == "attachment":
                    continue
                text = EmailParser._part_text(part)
                if text:
                    texts.append(text)

        return "\n".join(texts)

    @staticmethod
    def _part_text(part) -> str:
        """Decode a single part, tolerating unknown or lying charsets."""
        try:
            content = part.get_content()
        except (LookupError, UnicodeError):
            payload = part.get_payload(decode=True) or b""
            return payload.decode("utf-8", errors="replace")

        if isinstance(content, bytes):
            return content.decode("utf-8", errors="replace")
        return content if isinstance(content, str) else ""

    @staticmethod
    def decode_email_header(header_value) -> str:
        """Decode email header with proper encoding handling."""
        if not header_value:
            return ""

        try:
            return str(make_header(decode_header(str(header_value))))
        except (LookupError, UnicodeError, ValueError):
            return str(header_value)

    @staticmethod
    def parse_email_date(date_str: Optional[str]) -> datetime:
        """Parse an RFC 2822 date header, defaulting to now (UTC)."""
        if date_str:
            try:
                parsed = parsedate_to_datetime(str(date_str))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed
            except (TypeError, ValueError):
                logger.debug(f"Unparseable Date header: {date_str!r}")

        return datetime.now(timezone.utc)


def parse_internaldate(value: str) -> datetime:
    """Parse an IMAP INTERNALDATE such as ``17-Jul-1996 02:44:25 -0700``.

    Month names are matched against the fixed English table so that the
    result does not depend on the process locale.

    Raises:
        ValueError: If the value is not a valid INTERNALDATE
    """
    match = INTERNALDATE_RE.match(value)
    if not match:
        raise ValueError(f"Invalid INTERNALDATE: {value!r}")

    day, month_name, year, hour, minute, second, sign, off_h, off_m = match.groups()
    try:
        month = IMAP_MONTHS.index(month_name.title()) + 1
    except ValueError as e:
        raise ValueError(f"Invalid INTERNALDATE month: {month_name!r}") from e

    offset = timedelta(hours=int(off_h), minutes=int(off_m))
    tz = timezone(-offset if sign == "-" else offset)

    return datetime(
        int(year), month, int(day), int(hour), int(minute), int(second), tzinfo=tz
    )
