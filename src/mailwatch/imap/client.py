# =============================================================================
# IMAP Session
# =============================================================================
# The mail-store side of the watcher: an async wrapper around aioimaplib
# that offers exactly the primitives the watch engine needs.
#
# Key responsibilities:
#   - Connection management (connect over SSL or STARTTLS, disconnect)
#   - Authentication (LOGIN, once per connection)
#   - SELECT of the watched mailbox
#   - UID SEARCH with a filter such as "UNSEEN"
#   - FETCH of the most recent N messages as raw attribute sets
#
# Design notes:
#   - One command in flight at a time; a session belongs to one engine
#   - Message parsing lives in the decoder, this module only splits the
#     FETCH response into per-message attribute sets
#   - Bodies are fetched with BODY.PEEK so watching never marks mail read
# =============================================================================

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from aioimaplib import aioimaplib
from aioimaplib.aioimaplib import Abort, AioImapException, CommandTimeout

from mailwatch.imap.decoder import BODY, HEADER, UID, RawAttributes

if TYPE_CHECKING:
    from mailwatch.core import Account

logger = logging.getLogger(__name__)

# Items requested for every watched message
FETCH_ITEMS = f"({HEADER} {UID} BODY.PEEK[1])"

_FETCH_START_RE = re.compile(r"^\*?\s*(\d+)\s+FETCH\s*\((.*)$", re.IGNORECASE | re.DOTALL)
_UID_RE = re.compile(r"\bUID\s+(\d+)", re.IGNORECASE)
_LITERAL_RE = re.compile(
    r"(RFC822\.HEADER|BODY(?:\.PEEK)?\[1\])\s*\{(\d+)\}\s*$", re.IGNORECASE
)
_INLINE_RE = re.compile(
    r'(RFC822\.HEADER|BODY(?:\.PEEK)?\[1\])\s+(NIL|"((?:[^"\\]|\\.)*)")', re.IGNORECASE
)


def _quote_mailbox_name(name: str) -> str:
    """
    Quote an IMAP mailbox name if it contains special characters.

    Names with spaces, quotes, backslashes or brackets must be sent as a
    quoted string with internal quotes and backslashes escaped.
    """
    if ' ' in name or '"' in name or '\\' in name or any(c in name for c in '(){}[]'):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def _attribute_name(name: str) -> str:
    """Normalize an echoed attribute name (BODY.PEEK[1] comes back as BODY[1])."""
    name = name.upper()
    if name.startswith("BODY"):
        return BODY
    return name


@dataclass
class MailboxInfo:
    """
    Result of selecting a mailbox.

    Attributes:
        name: Mailbox name.
        exists: Number of messages currently in the mailbox.
        recent: Number of messages with the \\Recent flag.
        uidvalidity: UIDVALIDITY of the mailbox, if reported.
        uidnext: Predicted next UID, if reported.
    """
    name: str
    exists: int = 0
    recent: int = 0
    uidvalidity: int | None = None
    uidnext: int | None = None


@dataclass
class ConnectionState:
    """
    Tracks the current state of an IMAP session.

    Attributes:
        connected: Whether we have an active connection.
        authenticated: Whether LOGIN has succeeded on this connection.
        selected_mailbox: Currently selected mailbox, if any.
        capabilities: Server capabilities (from the greeting).
        exists: Message count of the selected mailbox at the last SELECT.
    """
    connected: bool = False
    authenticated: bool = False
    selected_mailbox: str | None = None
    capabilities: list[str] = field(default_factory=list)
    exists: int = 0


class IMAPSession:
    """
    Async IMAP session used by the watch engine.

    Usage:
        >>> session = IMAPSession(account)
        >>> await session.connect()
        >>> await session.authenticate()
        >>> info = await session.select_mailbox("INBOX")
        >>> raws = await session.fetch_range(1)
        >>> await session.disconnect()

    Attributes:
        account: Credentials and server address.
        state: Current connection state.
    """

    # Timeout for connecting and for each IMAP command (seconds)
    TIMEOUT = 30

    def __init__(self, account: "Account", timeout: float | None = None) -> None:
        self.account = account
        self.timeout = timeout if timeout is not None else self.TIMEOUT
        self.state = ConnectionState()
        self._client: aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None = None

    @property
    def is_authenticated(self) -> bool:
        """Check if the session is connected and logged in."""
        return self.state.connected and self.state.authenticated and self._client is not None

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        """
        Open a secure connection to the IMAP server.

        Uses implicit TLS, or upgrades a plain connection with STARTTLS
        when the account asks for it.

        Raises:
            IMAPConnectionError: If the server cannot be reached or does
                                 not offer the requested security.
        """
        host, port = self.account.host, self.account.port
        if self._client is not None:
            # Reconnecting: the old connection and its login are gone
            self._drop_connection()
        logger.info(f"Connecting to {host}:{port}")

        try:
            if self.account.security == "ssl":
                self._client = aioimaplib.IMAP4_SSL(host=host, port=port, timeout=self.timeout)
            else:
                self._client = aioimaplib.IMAP4(host=host, port=port, timeout=self.timeout)

            await self._client.wait_hello_from_server()
            self.state.connected = True
            self.state.capabilities = list(self._client.protocol.capabilities)
            logger.debug(f"Server capabilities: {self.state.capabilities}")

            if self.account.security == "starttls":
                if not self._client.has_capability("STARTTLS"):
                    self._drop_connection()
                    raise IMAPConnectionError("Server does not support STARTTLS")
                logger.debug("Upgrading to TLS via STARTTLS")
                await self._client.starttls()

        except (asyncio.TimeoutError, CommandTimeout) as e:
            self._drop_connection()
            raise IMAPConnectionError(f"Connection timed out to {host}:{port}") from e
        except (OSError, AioImapException) as e:
            self._drop_connection()
            raise IMAPConnectionError(f"Failed to connect to {host}:{port}: {e}") from e

    async def authenticate(self) -> None:
        """
        Log in with the account credentials.

        Must be called exactly once per connection, after connect().

        Raises:
            IMAPError: If not connected, or already authenticated.
            IMAPAuthenticationError: If the server rejects the credentials.
        """
        if not self.state.connected or self._client is None:
            raise IMAPError("Cannot authenticate before connecting")
        if self.state.authenticated:
            raise IMAPError("Session is already authenticated")

        logger.debug(f"Authenticating as {self.account.user}")

        try:
            response = await self._client.login(self.account.user, self.account.secret)
        except (asyncio.TimeoutError, CommandTimeout) as e:
            self._drop_connection()
            raise IMAPConnectionError("Timed out waiting for LOGIN response") from e
        except (OSError, AioImapException) as e:
            self._drop_connection()
            raise IMAPConnectionError(f"LOGIN failed, connection lost: {e}") from e

        if response.result != "OK":
            raise IMAPAuthenticationError(
                f"Authentication failed for {self.account.user}: {response.lines}"
            )

        self.state.authenticated = True
        logger.info(f"Authenticated as {self.account.user}")

    async def disconnect(self) -> None:
        """
        Gracefully close the session.

        Sends LOGOUT and drops the connection. Logout failures are logged,
        since the connection is going away either way.
        """
        if self._client and self.state.connected:
            try:
                logger.debug("Sending LOGOUT")
                await self._client.logout()
            except Exception as e:
                logger.warning(f"Error during logout: {e}")
        self._client = None
        self.state = ConnectionState()

    # =========================================================================
    # Mailbox Operations
    # =========================================================================

    async def select_mailbox(self, name: str) -> MailboxInfo:
        """
        Select a mailbox for the following SEARCH/FETCH.

        Args:
            name: Mailbox name (e.g. "INBOX").

        Returns:
            MailboxInfo with the current message count.

        Raises:
            IMAPError: If the mailbox cannot be selected.
        """
        client = self._require_client()
        logger.debug(f"Selecting mailbox: {name}")

        response = await self._command("SELECT", client.select(_quote_mailbox_name(name)))
        if response.result != "OK":
            raise IMAPError(f"Failed to select mailbox '{name}': {response.lines}")

        info = self._parse_select_response(name, response)
        self.state.selected_mailbox = name
        self.state.exists = info.exists
        logger.debug(f"Selected mailbox: {info}")
        return info

    def _parse_select_response(self, name: str, response) -> MailboxInfo:
        """Parse a SELECT response into a MailboxInfo."""
        info = MailboxInfo(name=name)

        for line in response.lines:
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("utf-8", errors="replace")

            match = re.search(r"(\d+)\s+EXISTS", line, re.IGNORECASE)
            if match:
                info.exists = int(match.group(1))

            match = re.search(r"(\d+)\s+RECENT", line, re.IGNORECASE)
            if match:
                info.recent = int(match.group(1))

            match = re.search(r"UIDVALIDITY\s+(\d+)", line, re.IGNORECASE)
            if match:
                info.uidvalidity = int(match.group(1))

            match = re.search(r"UIDNEXT\s+(\d+)", line, re.IGNORECASE)
            if match:
                info.uidnext = int(match.group(1))

        return info

    async def search(self, criteria: str) -> list[int]:
        """
        Run a UID SEARCH on the selected mailbox.

        Args:
            criteria: Search expression, e.g. "UNSEEN".

        Returns:
            UIDs of the matching messages, in server order.

        Raises:
            IMAPError: If no mailbox is selected or the search fails.
        """
        client = self._require_selected()
        response = await self._command("UID SEARCH", client.uid_search(criteria))
        if response.result != "OK":
            raise IMAPError(f"Search '{criteria}' failed: {response.lines}")

        uids: list[int] = []
        for line in response.lines:
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("utf-8", errors="replace")
            if "completed" in line.lower():
                continue
            uids.extend(int(token) for token in line.split() if token.isdigit())

        logger.debug(f"Search '{criteria}' matched {len(uids)} messages")
        return uids

    async def fetch_range(self, count: int) -> list[RawAttributes]:
        """
        Fetch the most recent `count` messages of the selected mailbox.

        The range is computed from the message count of the last SELECT,
        so select_mailbox() must run first in the same cycle.

        Args:
            count: How many of the newest messages to fetch.

        Returns:
            One RawAttributes per message, newest (highest sequence
            number) first. Servers answer in ascending order, so the
            parsed response is reversed.

        Raises:
            IMAPError: If no mailbox is selected or the fetch fails.
        """
        if count < 1:
            raise ValueError(f"Fetch window must be positive, got {count}")

        client = self._require_selected()
        total = self.state.exists
        if total == 0:
            return []

        start = max(1, total - count + 1)
        message_set = f"{start}:{total}"
        logger.debug(f"Fetching messages {message_set} from {self.state.selected_mailbox}")

        response = await self._command("FETCH", client.fetch(message_set, FETCH_ITEMS))
        if response.result != "OK":
            raise IMAPError(f"Fetch {message_set} failed: {response.lines}")

        raws = self._parse_fetch_response(response.lines)
        raws.sort(key=lambda raw: raw.seq, reverse=True)
        logger.debug(f"Fetched {len(raws)} messages")
        return raws

    def _parse_fetch_response(self, lines) -> list[RawAttributes]:
        """
        Split FETCH response lines into per-message attribute sets.

        aioimaplib hands back a mix of text lines and literal payloads.
        A text line ending in "NAME {N}" announces that the next item is
        the literal value of NAME.
        """
        raws: list[RawAttributes] = []
        current: RawAttributes | None = None
        pending: str | None = None

        for item in lines:
            if pending is not None and current is not None:
                if isinstance(item, str):
                    item = item.encode("utf-8")
                current.attrs[pending] = bytes(item)
                pending = None
                continue

            if isinstance(item, (bytes, bytearray)):
                line = bytes(item).decode("utf-8", errors="replace")
            else:
                line = str(item)

            match = _FETCH_START_RE.match(line)
            if match:
                current = RawAttributes(seq=int(match.group(1)))
                raws.append(current)
                line = match.group(2)
            elif current is None or "completed" in line.lower():
                # Status lines ("Fetch completed") carry no attributes
                continue

            uid_match = _UID_RE.search(line)
            if uid_match:
                current.attrs[UID] = int(uid_match.group(1))

            for name, value, quoted in _INLINE_RE.findall(line):
                current.attrs[_attribute_name(name)] = (
                    b"" if value.upper() == "NIL" else quoted.encode("utf-8")
                )

            literal = _LITERAL_RE.search(line)
            if literal:
                pending = _attribute_name(literal.group(1))

        return raws

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_client(self):
        if not self.is_authenticated:
            raise IMAPError("Session is not authenticated")
        return self._client

    def _require_selected(self):
        client = self._require_client()
        if self.state.selected_mailbox is None:
            raise IMAPError("No mailbox selected")
        return client

    async def _command(self, name: str, pending):
        """Await an aioimaplib command, mapping transport failures to IMAPError."""
        try:
            return await pending
        except (asyncio.TimeoutError, CommandTimeout) as e:
            raise IMAPError(f"{name} timed out") from e
        except (OSError, Abort) as e:
            self._drop_connection()
            raise IMAPConnectionError(f"{name} failed, connection lost: {e}") from e
        except AioImapException as e:
            raise IMAPError(f"{name} failed: {e}") from e

    def _drop_connection(self) -> None:
        """Forget the current connection without a LOGOUT exchange."""
        client, self._client = self._client, None
        self.state = ConnectionState()
        transport = getattr(getattr(client, "protocol", None), "transport", None)
        if transport is not None:
            transport.close()


# =============================================================================
# Exceptions
# =============================================================================

class IMAPError(Exception):
    """Base exception for IMAP operations (a failed protocol exchange)."""
    pass


class IMAPConnectionError(IMAPError):
    """Raised when unable to connect to the IMAP server."""
    pass


class IMAPAuthenticationError(IMAPError):
    """Raised when IMAP authentication fails."""
    pass
