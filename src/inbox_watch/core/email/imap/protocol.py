"""IMAP protocol operations - low-level IMAP command interface."""

import asyncio
import re
from enum import Enum
from typing import Awaitable, List, Optional, Sequence, Union

from inbox_watch.core.email.parser import EmailParser, parse_internaldate
from inbox_watch.core.models import MailboxState, MessageEnvelope, SearchCriteria
from inbox_watch.utils.config_manager import TimeoutConfig
from inbox_watch.utils.errors import (
    ErrorCategory,
    ErrorClassifier,
    FailureCause,
    InboxWatchError,
)
from inbox_watch.utils.logging import get_logger, log_span

from .constants import FetchItems, IMAPResponse
from .tunnel import TunneledIMAP4

logger = get_logger(__name__)

Line = Union[bytes, bytearray, str]

EXISTS_RE = re.compile(rb"^(\d+) EXISTS", re.IGNORECASE)
UIDNEXT_RE = re.compile(rb"\[UIDNEXT (\d+)\]", re.IGNORECASE)
UIDVALIDITY_RE = re.compile(rb"\[UIDVALIDITY (\d+)\]", re.IGNORECASE)
FETCH_UID_RE = re.compile(rb"\bUID (\d+)", re.IGNORECASE)
FETCH_INTERNALDATE_RE = re.compile(rb'INTERNALDATE "([^"]+)"', re.IGNORECASE)

# Untagged responses a server may push in the middle of any command
UNSOLICITED_KEYWORDS = frozenset({b"EXISTS", b"RECENT", b"EXPUNGE"})


class SessionState(str, Enum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    SELECTED = "selected"
    LOGGED_OUT = "logged_out"
    BROKEN = "broken"


def _as_bytes(line: Line) -> bytes:
    if isinstance(line, str):
        return line.encode("utf-8", errors="replace")
    return bytes(line)


def _response_text(lines: Sequence[Line]) -> str:
    if not lines:
        return "No response"
    return _as_bytes(lines[-1]).decode("utf-8", errors="replace").strip()


class IMAPProtocol:
    """A single IMAP session on an established tunnel.

    Operations are sequential; callers serialize access. Each command is
    bounded by its ``TimeoutConfig`` value, and every failure leaves as an
    ``InboxWatchError``. A network or timeout failure marks the session broken
    and it must be replaced.
    """

    def __init__(self, client: TunneledIMAP4, timeouts: Optional[TimeoutConfig] = None):
        self.client = client
        self.timeouts = timeouts or TimeoutConfig()
        self.state = SessionState.CONNECTED
        self.mailbox_state: Optional[MailboxState] = None
        self._selected_folder: Optional[str] = None

    @property
    def is_usable(self) -> bool:
        if self.state in (SessionState.LOGGED_OUT, SessionState.BROKEN):
            return False
        return not self.client.is_connection_lost

    @property
    def selected_folder(self) -> Optional[str]:
        return self._selected_folder

    async def _execute(self, operation: str, command: Awaitable, timeout: float, **details):
        """Run one aioimaplib command under a timeout, classifying failures."""
        try:
            return await asyncio.wait_for(self.client.until_lost(command), timeout=timeout)

        except asyncio.TimeoutError as e:
            self.state = SessionState.BROKEN
            raise ErrorClassifier.error(
                FailureCause.OPERATION_TIMEOUT,
                f"IMAP {operation} timed out after {timeout:.1f}s",
                source=e,
                operation=operation,
                timeout=timeout,
                **details,
            ) from e

        except Exception as e:
            error = ErrorClassifier.classify(e, f"IMAP {operation}", **details)
            if error.category in (ErrorCategory.NETWORK, ErrorCategory.TIMEOUT):
                self.state = SessionState.BROKEN
            raise error from e

    def _check_response(
        self,
        response,
        operation: str,
        cause: FailureCause = FailureCause.COMMAND_REJECTED,
        **details,
    ) -> None:
        """Raise if the tagged completion is not OK."""
        if response.result == IMAPResponse.OK:
            return

        text = _response_text(response.lines)
        raise ErrorClassifier.error(
            cause,
            f"IMAP {operation} rejected ({response.result}): {text}",
            operation=operation,
            result=response.result,
            response=text,
            **details,
        )

    def _require(self, *states: SessionState) -> None:
        if self.state is not SessionState.LOGGED_OUT and self.client.is_connection_lost:
            self.state = SessionState.BROKEN
        if self.state in states:
            return

        if self.state is SessionState.LOGGED_OUT:
            raise ErrorClassifier.error(
                FailureCause.SESSION_CLOSED, "IMAP session is logged out"
            )
        if self.state is SessionState.BROKEN:
            raise ErrorClassifier.error(
                FailureCause.CONNECTION_LOST, "IMAP session was lost and must be reopened"
            )
        raise ErrorClassifier.error(
            FailureCause.UNEXPECTED,
            f"IMAP session is {self.state.value}, expected one of "
            f"{', '.join(s.value for s in states)}",
        )

    ## Session setup

    async def authenticate(self, username: str, password: str) -> None:
        """Log in with a username and password.

        Raises:
            InboxWatchError: Protocol error (non-retryable) if the server
                rejects the credentials
        """
        self._require(SessionState.CONNECTED)

        async with log_span("imap.authenticate", username=username):
            response = await self._execute(
                "LOGIN",
                self.client.login(username, password),
                self.timeouts.auth,
                username=username,
            )
            self._check_response(
                response, "LOGIN", cause=FailureCause.LOGIN_REJECTED, username=username
            )

        self.state = SessionState.AUTHENTICATED
        logger.debug("IMAP login succeeded", extra={"username": username})

    async def select(self, folder: str) -> MailboxState:
        """Select a mailbox and return its counters.

        Args:
            folder: Folder name (e.g., "INBOX", "[Gmail]/All Mail")
        """
        self._require(SessionState.AUTHENTICATED, SessionState.SELECTED)

        response = await self._execute(
            "SELECT", self.client.select(folder), self.timeouts.select, folder=folder
        )
        self._check_response(response, "SELECT", folder=folder)

        state = self.parse_select_response(response.lines)
        self.mailbox_state = state
        self._selected_folder = folder
        self.state = SessionState.SELECTED

        logger.debug(
            f"Selected IMAP folder: {folder}",
            extra={"exists": state.exists, "uid_next": state.uid_next},
        )
        return state

    @staticmethod
    def parse_select_response(lines: Sequence[Line]) -> MailboxState:
        exists = uid_next = uid_validity = None

        for line in lines:
            data = _as_bytes(line).strip()
            exists_match = EXISTS_RE.match(data)
            if exists is None and exists_match:
                exists = int(exists_match.group(1))

            next_match = UIDNEXT_RE.search(data)
            if next_match:
                uid_next = int(next_match.group(1))

            validity_match = UIDVALIDITY_RE.search(data)
            if validity_match:
                uid_validity = int(validity_match.group(1))

        if exists is None:
            raise ErrorClassifier.error(
                FailureCause.MALFORMED_RESPONSE,
                "SELECT response did not report a message count",
                response=_response_text(lines),
            )

        return MailboxState(exists=exists, uid_next=uid_next, uid_validity=uid_validity)

    ## Mailbox operations

    async def noop(self) -> None:
        """Send NOOP so the server reports new messages."""
        self._require(SessionState.AUTHENTICATED, SessionState.SELECTED)

        response = await self._execute("NOOP", self.client.noop(), self.timeouts.search)
        self._check_response(response, "NOOP")

    async def search(self, criteria: SearchCriteria) -> List[int]:
        """Search for message UIDs matching criteria.

        Returns:
            List of matching UIDs (sorted ascending)
        """
        self._require(SessionState.SELECTED)
        query = criteria.to_imap()

        async with log_span("imap.search", criteria=query):
            response = await self._execute(
                "UID SEARCH",
                self.client.uid_search(query),
                self.timeouts.search,
                criteria=query,
            )
            self._check_response(response, "UID SEARCH", criteria=query)
            uids = self.parse_search_response(response.lines)

        logger.debug("UID search completed", extra={"criteria": query, "count": len(uids)})
        return uids

    @staticmethod
    def parse_search_response(lines: Sequence[Line]) -> List[int]:
        """Extract UIDs from the untagged SEARCH data.

        The final line is the tagged completion text. Unsolicited
        EXISTS/RECENT/EXPUNGE/FETCH lines are ignored; anything else that is
        not a list of numbers is a malformed response.
        """
        data_lines = lines[:-1] if len(lines) > 1 else lines
        uids = set()

        for line in data_lines:
            tokens = _as_bytes(line).split()
            if not tokens:
                continue

            if all(token.isdigit() for token in tokens):
                uids.update(int(token) for token in tokens)
                continue

            if tokens[0].isdigit() and len(tokens) > 1:
                keyword = tokens[1].upper()
                if keyword in UNSOLICITED_KEYWORDS or keyword == b"FETCH":
                    continue

            if len(lines) == 1:
                # A lone line is the completion text of an empty result
                continue

            raise ErrorClassifier.error(
                FailureCause.MALFORMED_RESPONSE,
                f"Unexpected data in SEARCH response: {_as_bytes(line)[:80]!r}",
            )

        return sorted(uids)

    async def fetch(self, uid: int) -> Optional[MessageEnvelope]:
        """Fetch and decode one message by UID without marking it seen.

        Returns:
            The message, or None if no message has this UID (e.g. expunged)

        Raises:
            InboxWatchError: Parse error if the response or message cannot be
                decoded
        """
        self._require(SessionState.SELECTED)

        async with log_span("imap.fetch", uid=uid):
            response = await self._execute(
                "UID FETCH",
                self.client.uid("fetch", str(uid), FetchItems.MESSAGE),
                self.timeouts.fetch,
                uid=uid,
            )
            self._check_response(response, "UID FETCH", uid=uid)
            return self.parse_fetch_response(response.lines, uid)

    @staticmethod
    def parse_fetch_response(lines: Sequence[Line], uid: int) -> Optional[MessageEnvelope]:
        """Locate the literal for ``uid`` in a FETCH response and decode it.

        aioimaplib delivers the message literal as a ``bytearray`` following
        the ``n FETCH (...`` line; the closing line may carry the remaining
        attributes.
        """
        saw_our_fetch = False

        for i, line in enumerate(lines):
            if isinstance(line, bytearray):
                continue

            header = _as_bytes(line)
            if b"FETCH" not in header.upper():
                continue

            literal = lines[i + 1] if i + 1 < len(lines) else None
            trailer = lines[i + 2] if i + 2 < len(lines) else b""
            if isinstance(trailer, bytearray):
                trailer = b""
            meta = header + b" " + _as_bytes(trailer)

            uid_match = FETCH_UID_RE.search(meta)
            if uid_match and int(uid_match.group(1)) != uid:
                continue

            if not isinstance(literal, bytearray):
                # Flag updates and other literal-free FETCH data
                if uid_match:
                    saw_our_fetch = True
                continue

            arrived_at = None
            date_match = FETCH_INTERNALDATE_RE.search(meta)
            if date_match:
                try:
                    arrived_at = parse_internaldate(date_match.group(1).decode("ascii"))
                except ValueError:
                    logger.debug(f"Ignoring unparseable INTERNALDATE for UID {uid}")

            return EmailParser.parse_from_bytes(bytes(literal), uid, arrived_at)

        if saw_our_fetch:
            raise ErrorClassifier.error(
                FailureCause.MALFORMED_RESPONSE,
                f"FETCH response for UID {uid} carried no message body",
                uid=uid,
            )

        return None

    async def latest_uid(self) -> int:
        """Highest UID currently in the selected mailbox, 0 if empty."""
        uids = await self.search(SearchCriteria.all())
        return uids[-1] if uids else 0

    ## Teardown

    async def logout(self) -> None:
        """Send LOGOUT and close the transport.

        The transport is closed even if LOGOUT fails; failures are raised.
        """
        if self.state is SessionState.LOGGED_OUT:
            return

        try:
            if self.state is not SessionState.BROKEN:
                try:
                    response = await self._execute(
                        "LOGOUT", self.client.logout(), self.timeouts.logout
                    )
                except InboxWatchError as e:
                    # Servers close the stream after BYE, sometimes before the tagged OK
                    if e.cause is not FailureCause.CONNECTION_LOST:
                        raise
                    logger.debug(f"Connection closed during LOGOUT: {e.message}")
                else:
                    self._check_response(response, "LOGOUT")

        finally:
            self.abort()
            self.state = SessionState.LOGGED_OUT

    def abort(self) -> None:
        """Close the transport without LOGOUT."""
        if self.state is not SessionState.LOGGED_OUT:
            self.state = SessionState.BROKEN
        self.client.close_transport()
