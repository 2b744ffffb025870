# =============================================================================
# Watch Engine
# =============================================================================
# Polls one mailbox and delivers each newly arrived message once.
#
# Key responsibilities:
#   - Own the IMAP session (start, reconnect after a dropped connection,
#     close on stop)
#   - Run the fetch cycle: SELECT, optional SEARCH, FETCH, decode
#   - Deduplicate against the last delivered UID
#   - Hand new messages to a delivery sink
#
# Design notes:
#   - Only the newest message of each cycle is considered. If several
#     arrive within one interval, only the newest is surfaced.
#   - The first non-empty cycle records a baseline and delivers nothing, so
#     mail that was already waiting when watching started is not "new".
#     A changed UIDVALIDITY starts a new baseline the same way.
#   - Session and watch state are only touched by the polling task. The
#     consumer only ever sees the sink.
# =============================================================================

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from mailwatch.config import WatchConfig
from mailwatch.core import Account, Message
from mailwatch.imap.client import IMAPError, IMAPSession, MailboxInfo
from mailwatch.imap.decoder import RawAttributes, decode_batch
from mailwatch.watch.sinks import DeliverySink, MessageHandler, QueueSink

logger = logging.getLogger(__name__)

# Receives cycle-level failures, separately from delivered messages
ErrorHook = Callable[[Exception], None]


class MailSession(Protocol):
    """The operations the engine needs from a mail session."""

    @property
    def is_authenticated(self) -> bool: ...

    async def connect(self) -> None: ...

    async def authenticate(self) -> None: ...

    async def select_mailbox(self, name: str) -> MailboxInfo: ...

    async def search(self, criteria: str) -> list[int]: ...

    async def fetch_range(self, count: int) -> list[RawAttributes]: ...

    async def disconnect(self) -> None: ...


class EngineState(Enum):
    """Lifecycle of a WatchEngine."""
    UNSTARTED = "unstarted"
    AUTHENTICATED = "authenticated"
    POLLING = "polling"
    STOPPED = "stopped"


@dataclass
class WatchState:
    """
    Deduplication state of the polling loop.

    Attributes:
        last_uid: UID of the newest message seen so far. None until the
                  first non-empty cycle establishes the baseline.
        window: Number of newest messages fetched per cycle.
        failures: Consecutive failed cycles.
        uidvalidity: UIDVALIDITY the baseline belongs to, if the server
                     reported one. UIDs only compare within one value.
    """
    last_uid: int | None = None
    window: int = 1
    failures: int = 0
    uidvalidity: int | None = None

    @property
    def baseline_set(self) -> bool:
        return self.last_uid is not None


class WatchEngine:
    """
    Polling watcher for new mail in one mailbox.

    Usage:
        >>> engine = await WatchEngine.start(user, secret, "imap.example.com:993")
        >>> await engine.watch_func(30, lambda msg: print(msg.subject))

    Or with an explicit sink:
        >>> sink = QueueSink(maxsize=10)
        >>> task = asyncio.create_task(engine.watch(sink, interval=30))
        >>> message = await sink.get()
        >>> await engine.stop()

    Attributes:
        session: The IMAP session, owned exclusively by this engine.
        mailbox: Name of the watched mailbox.
        config: Polling settings.
        on_error: Optional hook called with each failed cycle's exception.
    """

    # How long stop() lets the polling task reach a tick boundary
    STOP_TIMEOUT = 2.0

    def __init__(
        self,
        session: MailSession,
        mailbox: str = "INBOX",
        config: WatchConfig | None = None,
    ) -> None:
        self.session = session
        self.mailbox = mailbox
        self.config = config or WatchConfig()
        self.state = EngineState.UNSTARTED
        self.watch_state = WatchState(window=self.config.window)
        self.on_error: ErrorHook | None = None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    async def start(
        cls,
        user: str,
        secret: str,
        address: str,
        mailbox: str = "INBOX",
        *,
        config: WatchConfig | None = None,
        session_factory: Callable[..., MailSession] = IMAPSession,
    ) -> "WatchEngine":
        """
        Connect, log in and return a ready engine.

        Raises:
            IMAPConnectionError: If the server cannot be reached.
            IMAPAuthenticationError: If the credentials are rejected.
        """
        account = Account(user=user, secret=secret, address=address, mailbox=mailbox)
        return await cls.start_account(account, config, session_factory=session_factory)

    @classmethod
    async def start_account(
        cls,
        account: Account,
        config: WatchConfig | None = None,
        *,
        session_factory: Callable[..., MailSession] = IMAPSession,
    ) -> "WatchEngine":
        """Same as start(), from an Account."""
        config = config or WatchConfig()
        session = session_factory(account, timeout=config.io_timeout)

        try:
            await session.connect()
            await session.authenticate()
        except IMAPError:
            await session.disconnect()
            raise

        engine = cls(session, account.mailbox, config)
        engine.state = EngineState.AUTHENTICATED
        logger.info(f"Watch engine ready for {account}")
        return engine

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def last_uid(self) -> int | None:
        """UID of the newest message seen, None before the baseline."""
        return self.watch_state.last_uid

    @property
    def baseline_set(self) -> bool:
        return self.watch_state.baseline_set

    @property
    def is_running(self) -> bool:
        return self.state is EngineState.POLLING

    # =========================================================================
    # Fetch Cycle
    # =========================================================================

    async def fetch_cycle(self, filter: str = "") -> list[Message]:
        """
        Fetch and decode the newest messages of the watched mailbox.

        Args:
            filter: Search expression run before fetching ("" skips SEARCH).

        Returns:
            Decoded messages in session order, newest first.
            Messages that fail to decode are left out.

        Raises:
            IMAPError: If any step of the exchange fails.
        """
        self._require_session()

        if not self.session.is_authenticated:
            logger.info("Session dropped, reconnecting")
            await self.session.connect()
            await self.session.authenticate()

        info = await self.session.select_mailbox(self.mailbox)
        self._check_uidvalidity(info)

        if filter:
            matches = await self.session.search(filter)
            logger.debug(f"{len(matches)} of {info.exists} messages match '{filter}'")

        raws = await self.session.fetch_range(self.watch_state.window)
        return decode_batch(raws)

    async def tick(self, sink: DeliverySink) -> Message | None:
        """
        Run one polling step.

        Returns:
            The delivered message, or None if nothing was delivered.
        """
        try:
            messages = await self._run_cycle()
        except (IMAPError, asyncio.TimeoutError) as e:
            self.watch_state.failures += 1
            logger.warning(
                f"Fetch cycle failed ({self.watch_state.failures} in a row): "
                f"{str(e) or type(e).__name__}"
            )
            self._report(e)
            return None

        self.watch_state.failures = 0

        if not messages:
            return None

        candidate = messages[0]
        last_uid = self.watch_state.last_uid

        if last_uid is None:
            self.watch_state.last_uid = candidate.uid
            logger.info(f"Baseline set at UID {candidate.uid}")
            return None

        if candidate.uid < last_uid:
            # Newest message went away (expunged); keep the high-water mark
            logger.debug(f"Newest UID {candidate.uid} is below last seen {last_uid}")
            return None

        if candidate.uid == last_uid:
            return None

        self.watch_state.last_uid = candidate.uid
        logger.info(f"New message {candidate.uid}: {candidate.subject!r}")

        try:
            await sink.deliver(candidate)
        except Exception as e:
            logger.error(f"Error delivering message {candidate.uid}: {e}")
            self._report(e)
        return candidate

    async def _run_cycle(self) -> list[Message]:
        cycle = self.fetch_cycle(self.config.filter)
        if self.config.cycle_timeout is None:
            return await cycle
        return await asyncio.wait_for(cycle, timeout=self.config.cycle_timeout)

    # =========================================================================
    # Polling Loop
    # =========================================================================

    async def watch(
        self,
        sink: DeliverySink | asyncio.Queue,
        interval: float | None = None,
    ) -> None:
        """
        Poll until stopped, delivering new messages to the sink.

        Every `interval` seconds (the config interval if omitted) runs one
        tick. The session is closed when the loop ends.

        Args:
            sink: A DeliverySink, or a bounded asyncio.Queue to push into.
            interval: Seconds between ticks.
        """
        if isinstance(sink, asyncio.Queue):
            sink = QueueSink(queue=sink)
        if interval is None:
            interval = self.config.interval
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")

        self._require_session()
        if self.state is EngineState.POLLING:
            raise RuntimeError("Watch engine is already polling")

        self.state = EngineState.POLLING
        self._task = asyncio.current_task()
        logger.info(f"Watching {self.mailbox} every {interval}s")

        try:
            while not self._stop_event.is_set():
                if await self._wait(self._next_delay(interval)):
                    break
                await self.tick(sink)
        finally:
            await self._close()

    async def watch_func(self, interval: float | None, handler: MessageHandler) -> None:
        """
        Poll in the background and call `handler` for each new message.

        The handler runs on the calling task, one message at a time, in
        delivery order. Returns once the engine is stopped; cancelling the
        caller stops the background poller too.
        """
        sink = QueueSink(maxsize=1)
        producer = asyncio.create_task(self.watch(sink, interval), name=f"mailwatch-{self.mailbox}")

        try:
            while True:
                getter = asyncio.ensure_future(sink.get())
                done, _ = await asyncio.wait(
                    {getter, producer}, return_when=asyncio.FIRST_COMPLETED
                )

                if getter not in done:
                    getter.cancel()
                    # Re-raise whatever ended the poller, if anything
                    producer.result()
                    return

                result = handler(getter.result())
                if inspect.isawaitable(result):
                    await result
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

    async def stop(self) -> None:
        """
        Stop polling and close the session.

        The polling task exits at its next tick boundary; if it is still
        busy after STOP_TIMEOUT seconds it is cancelled.
        """
        if self.state is EngineState.STOPPED:
            return

        logger.info(f"Stopping watch engine for {self.mailbox}")
        self._stop_event.set()

        task = self._task
        if task and not task.done() and task is not asyncio.current_task():
            _, pending = await asyncio.wait({task}, timeout=self.STOP_TIMEOUT)
            if pending:
                logger.warning("Polling task did not stop cleanly, cancelling")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        await self._close()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_session(self) -> None:
        if self.state is EngineState.UNSTARTED:
            raise RuntimeError("Watch engine was not started; use WatchEngine.start()")
        if self.state is EngineState.STOPPED:
            raise RuntimeError("Watch engine is stopped")

    async def _wait(self, delay: float) -> bool:
        """Sleep for `delay` seconds. Returns True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _next_delay(self, interval: float) -> float:
        """Interval before the next tick, backed off after repeated failures."""
        after = self.config.backoff_after
        failures = self.watch_state.failures
        if not after or failures < after:
            return interval
        ceiling = max(self.config.max_backoff, interval)
        return min(interval * 2 ** (failures - after + 1), ceiling)

    def _check_uidvalidity(self, info: MailboxInfo) -> None:
        """Drop the baseline if the mailbox was recreated under a new UID space."""
        if info.uidvalidity is None:
            return
        known = self.watch_state.uidvalidity
        if known is not None and info.uidvalidity != known and self.watch_state.baseline_set:
            logger.warning(
                f"UIDVALIDITY of {self.mailbox} changed ({known} -> {info.uidvalidity}), "
                f"resetting baseline"
            )
            self.watch_state.last_uid = None
        self.watch_state.uidvalidity = info.uidvalidity

    def _report(self, error: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as e:
            logger.error(f"Error in error hook: {e}")

    async def _close(self) -> None:
        if self.state is EngineState.STOPPED:
            return
        self.state = EngineState.STOPPED
        self._stop_event.set()
        await self.session.disconnect()
        logger.info(f"Watch engine for {self.mailbox} stopped")
