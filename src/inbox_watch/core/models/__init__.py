"""Domain models shared by the session, polling and client layers."""

from .message import MailboxState, MatchResult, MessageEnvelope, SearchCriteria, SearchKind

__all__ = [
    "MailboxState",
    "MatchResult",
    "MessageEnvelope",
    "SearchCriteria",
    "SearchKind",
]
