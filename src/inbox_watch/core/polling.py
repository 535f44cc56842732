"""Polling engine: waits for, or looks back for, a message that matches.

The engine drives an ``IMAPConnection`` (anything with ``get_session``,
``reconnect`` and ``discard``). It never owns the connection beyond one
operation; the client handle does.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Union

from inbox_watch.core.email.matchers import Matcher, as_matcher
from inbox_watch.core.models import MatchResult, MessageEnvelope, SearchCriteria
from inbox_watch.utils.config_manager import PollingConfig
from inbox_watch.utils.errors import (
    ErrorCategory,
    ErrorClassifier,
    FailureCause,
    InboxWatchError,
)
from inbox_watch.utils.logging import get_logger, log_event, log_span

logger = get_logger(__name__)

MatcherLike = Union[Matcher, Callable[[str], Optional[str]]]

# Failures that describe the outcome of a search rather than a broken session
RESULT_CAUSES = frozenset(
    {
        FailureCause.NO_MATCH,
        FailureCause.WAIT_EXPIRED,
        FailureCause.SESSION_CLOSED,
    }
)

# Failures confined to a single message; the message is skipped
MESSAGE_CAUSES = frozenset({FailureCause.MALFORMED_MESSAGE, FailureCause.MATCHER_FAILED})


class _DeadlineReached(Exception):
    """The overall wait budget ran out."""


@dataclass
class WaitProgress:
    """Book-keeping for one ``wait_for_match`` call."""

    high_water: Optional[int] = None
    uid_validity: Optional[int] = None
    cycles: int = 0
    new_messages: int = 0
    reconnects: int = 0
    failures: int = 0
    interrupted: bool = False


class PollingEngine:
    """Runs match operations against the connection's current session."""

    def __init__(
        self,
        connection,
        polling: Optional[PollingConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connection = connection
        self.polling = polling or PollingConfig()
        self._clock = clock

    ## Public operations

    async def wait_for_match(self, matcher: MatcherLike) -> MatchResult:
        """Poll until a message arriving after this call matches.

        Raises:
            InboxWatchError: Timeout (retryable) if no new message arrived
                before ``max_wait``; NotFound if new messages arrived but none
                matched; any non-retryable error immediately
        """
        matcher = as_matcher(matcher)
        deadline = self._clock() + self.polling.max_wait
        progress = WaitProgress()
        needs_reconnect = False

        logger.debug(
            f"Waiting for {matcher.description}",
            extra={"max_wait": self.polling.max_wait, "interval": self.polling.interval},
        )

        async with self._session_guard(progress):
            while True:
                progress.cycles += 1

                try:
                    async with log_span("poll.cycle", cycle=progress.cycles):
                        if needs_reconnect:
                            await self._reconnect(progress, deadline)
                            needs_reconnect = False

                        result = await self._poll_once(matcher, progress, deadline)
                        if result is not None:
                            return result

                except _DeadlineReached:
                    break

                except InboxWatchError as e:
                    if not self._should_reconnect(e):
                        raise

                    progress.failures += 1
                    needs_reconnect = True
                    logger.warning(
                        f"Poll cycle {progress.cycles} failed, will reconnect: {e.message}",
                        extra={"category": e.category.value, "cause": e.cause.value},
                    )

                remaining = deadline - self._clock()
                if remaining <= 0:
                    break

                await asyncio.sleep(min(self.polling.interval, remaining))

        raise self._expiry_error(matcher, progress)

    async def find_recent_match(
        self,
        matcher: MatcherLike,
        lookback: Union[float, timedelta] = 300.0,
    ) -> MatchResult:
        """Check messages that arrived within ``lookback`` once, newest first.

        Raises:
            InboxWatchError: NotFound if no recent message matches
        """
        matcher = as_matcher(matcher)
        if not isinstance(lookback, timedelta):
            lookback = timedelta(seconds=lookback)
        if lookback < timedelta(0):
            raise ErrorClassifier.error(
                FailureCause.INVALID_CONFIG,
                f"Lookback must not be negative, got {lookback}",
            )

        cutoff = datetime.now(timezone.utc) - lookback
        progress = WaitProgress()

        async with self._session_guard(progress):
            async with log_span("poll.recent", lookback_seconds=lookback.total_seconds()):
                session = await self.connection.get_session()
                uids = await session.search(SearchCriteria.since_time(cutoff))

                for uid in reversed(uids):
                    envelope = await self._fetch(session, uid, progress)
                    if envelope is None:
                        continue
                    if envelope.arrived_at < cutoff:
                        break

                    value = self._apply(matcher, envelope)
                    if value is not None:
                        return self._matched(value, envelope)

        raise ErrorClassifier.error(
            FailureCause.NO_MATCH,
            f"No message from the last {lookback} matched {matcher.description}",
            matcher=matcher.description,
            lookback_seconds=lookback.total_seconds(),
        )

    ## Cycle steps

    async def _poll_once(
        self, matcher: Matcher, progress: WaitProgress, deadline: Optional[float]
    ) -> Optional[MatchResult]:
        # The first cycle always completes; only per-command timeouts bound it
        if progress.cycles == 1:
            deadline = None

        session = await self._bounded(self.connection.get_session(), deadline, progress)

        if progress.high_water is None:
            progress.high_water = await self._bounded(session.latest_uid(), deadline, progress)
            progress.uid_validity = self._uid_validity(session)
            logger.debug(f"Watching for UIDs above {progress.high_water}")
        else:
            await self._bounded(session.noop(), deadline, progress)

        high_water = progress.high_water
        uids = await self._bounded(
            session.search(SearchCriteria.uid_after(high_water)), deadline, progress
        )

        # "n:*" always includes the highest UID, even when it is below n
        for uid in sorted(u for u in uids if u > high_water):
            envelope = await self._bounded(
                self._fetch(session, uid, progress), deadline, progress
            )
            progress.high_water = max(progress.high_water, uid)
            if envelope is None:
                continue

            progress.new_messages += 1
            value = self._apply(matcher, envelope)
            if value is not None:
                return self._matched(value, envelope)

        return None

    async def _reconnect(self, progress: WaitProgress, deadline: float) -> None:
        session = await self._bounded(self.connection.reconnect(), deadline, progress)
        progress.reconnects += 1

        uid_validity = self._uid_validity(session)
        if progress.uid_validity is not None and uid_validity != progress.uid_validity:
            # UIDs from the old session mean nothing now; start over from here
            logger.warning("UIDVALIDITY changed after reconnect, resetting watermark")
            progress.high_water = None

        log_event(
            "poll_reconnected",
            "Reconnected during wait",
            level="DEBUG",
            reconnects=progress.reconnects,
        )

    async def _fetch(
        self, session, uid: int, progress: WaitProgress
    ) -> Optional[MessageEnvelope]:
        """Fetch one message; undecodable messages are counted and skipped."""
        try:
            return await session.fetch(uid)
        except InboxWatchError as e:
            if e.cause not in MESSAGE_CAUSES:
                raise
            progress.new_messages += 1
            logger.warning(f"Skipping message {uid}: {e.message}")
            return None

    def _apply(self, matcher: Matcher, envelope: MessageEnvelope) -> Optional[str]:
        """Run the matcher on one message; matcher failures skip the message."""
        try:
            return matcher.find_match(envelope.body)
        except InboxWatchError as e:
            if e.category is not ErrorCategory.PARSE:
                raise
            error = e
        except Exception as e:
            error = ErrorClassifier.error(
                FailureCause.MATCHER_FAILED,
                f"Matcher '{matcher.description}' raised {type(e).__name__}: {e}",
                source=e,
            )

        logger.warning(
            f"Matcher failed on message {envelope.uid}, skipping: {error.message}"
        )
        return None

    def _matched(self, value: str, envelope: MessageEnvelope) -> MatchResult:
        log_event(
            "match_found",
            f"Matched message {envelope.uid}",
            uid=envelope.uid,
            arrived_at=envelope.arrived_at.isoformat(),
        )
        return MatchResult(value=value, uid=envelope.uid)

    ## Helpers

    async def _bounded(
        self, awaitable: Awaitable, deadline: Optional[float], progress: WaitProgress
    ):
        """Await within the remaining budget, or unbounded without a deadline."""
        if deadline is None:
            return await awaitable

        remaining = deadline - self._clock()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _DeadlineReached()

        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            # A command was cut short; its session is in an unknown state
            progress.interrupted = True
            raise _DeadlineReached() from None

    def _should_reconnect(self, error: InboxWatchError) -> bool:
        if error.cause in RESULT_CAUSES:
            return False
        if error.retryable:
            return True
        return (
            self.polling.reconnect_on_parse_error
            and error.cause is FailureCause.MALFORMED_RESPONSE
        )

    @staticmethod
    def _uid_validity(session) -> Optional[int]:
        state = getattr(session, "mailbox_state", None)
        return state.uid_validity if state is not None else None

    def _expiry_error(self, matcher: Matcher, progress: WaitProgress) -> InboxWatchError:
        details = {
            "matcher": matcher.description,
            "max_wait": self.polling.max_wait,
            "cycles": progress.cycles,
            "new_messages": progress.new_messages,
            "reconnects": progress.reconnects,
        }

        if progress.new_messages == 0:
            return ErrorClassifier.error(
                FailureCause.WAIT_EXPIRED,
                f"No new mail within {self.polling.max_wait:g}s",
                **details,
            )

        return ErrorClassifier.error(
            FailureCause.NO_MATCH,
            f"{progress.new_messages} new message(s) within {self.polling.max_wait:g}s, "
            f"none matched {matcher.description}",
            **details,
        )

    def _session_guard(self, progress: WaitProgress) -> "_SessionGuard":
        return _SessionGuard(self.connection, progress)


class _SessionGuard:
    """Tears the session down when an operation ends abnormally.

    Cancellation and session-level failures drop the transport so that the
    next operation starts from a fresh session. Results (match, NotFound,
    expiry) leave a healthy session in place.
    """

    def __init__(self, connection, progress: WaitProgress):
        self.connection = connection
        self.progress = progress

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            if self.progress.interrupted:
                self.connection.discard()
            return False

        if isinstance(exc, asyncio.CancelledError):
            logger.debug("Operation cancelled, closing session")
            self.connection.discard()
        elif isinstance(exc, InboxWatchError):
            if exc.cause not in RESULT_CAUSES:
                logger.debug(f"Closing session after {exc.category.value} error")
                self.connection.discard()
        elif isinstance(exc, Exception):
            self.connection.discard()

        return False
