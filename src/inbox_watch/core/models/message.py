"""Message, mailbox and search data types."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

IMAP_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


@dataclass(frozen=True)
class MessageEnvelope:
    """A fetched message. Read-only; lives for one poll cycle unless matched."""

    uid: int
    arrived_at: datetime
    body: str
    subject: str = ""
    sender: str = ""

    def __repr__(self) -> str:
        return (
            f"MessageEnvelope(uid={self.uid}, arrived_at={self.arrived_at.isoformat()}, "
            f"subject={self.subject!r}, body_len={len(self.body)})"
        )


@dataclass(frozen=True)
class MatchResult:
    """An extracted value and the UID of the message it came from."""

    value: str
    uid: int

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MailboxState:
    """Mailbox counters reported by SELECT."""

    exists: int
    uid_next: Optional[int] = None
    uid_validity: Optional[int] = None

    @property
    def high_water_uid(self) -> Optional[int]:
        """Highest UID currently assigned, when the server reported UIDNEXT."""
        if self.uid_next is None:
            return None
        return max(self.uid_next - 1, 0)


class SearchKind(str, Enum):
    ALL = "all"
    UNSEEN = "unseen"
    SINCE = "since"
    UID_AFTER = "uid_after"


@dataclass(frozen=True)
class SearchCriteria:
    """One of the supported IMAP search criteria."""

    kind: SearchKind
    since: Optional[datetime] = field(default=None)
    uid: Optional[int] = field(default=None)

    @classmethod
    def all(cls) -> "SearchCriteria":
        return cls(SearchKind.ALL)

    @classmethod
    def unseen(cls) -> "SearchCriteria":
        return cls(SearchKind.UNSEEN)

    @classmethod
    def since_time(cls, timestamp: datetime) -> "SearchCriteria":
        return cls(SearchKind.SINCE, since=timestamp)

    @classmethod
    def uid_after(cls, uid: int) -> "SearchCriteria":
        return cls(SearchKind.UID_AFTER, uid=uid)

    def to_imap(self) -> str:
        """Render as an IMAP SEARCH key.

        SINCE only has day granularity and is evaluated in the server's time
        zone, so the date is taken one day early; callers filter on the exact
        arrival time.
        """
        if self.kind is SearchKind.ALL:
            return "ALL"
        if self.kind is SearchKind.UNSEEN:
            return "UNSEEN"
        if self.kind is SearchKind.SINCE:
            moment = self.since or datetime.now(timezone.utc)
            if moment.tzinfo is None:
                moment = moment.replace(tzinfo=timezone.utc)
            day = (moment.astimezone(timezone.utc) - timedelta(days=1)).date()
            return f"SINCE {day.day:02d}-{IMAP_MONTHS[day.month - 1]}-{day.year}"

        return f"UID {(self.uid or 0) + 1}:*"
