# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the mailwatch test suite, including an in-memory
# mail session that stands in for a real IMAP server in engine tests.
# =============================================================================

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mailwatch.config import WatchConfig
from mailwatch.core import Account
from mailwatch.imap.client import IMAPError, MailboxInfo
from mailwatch.imap.decoder import BODY, HEADER, UID, RawAttributes
from mailwatch.watch import WatchEngine


def make_raw(uid, subject="Hello", sender="alice@example.com", body=b"Hi there", seq=None):
    """Build the attribute set a FETCH would return for one message."""
    header = (
        f"From: {sender}\r\n"
        f"To: bob@example.com\r\n"
        f"Subject: {subject}\r\n"
        f"\r\n"
    ).encode("utf-8")
    return RawAttributes(
        seq=seq if seq is not None else uid,
        attrs={UID: uid, HEADER: header, BODY: body},
    )


def imap_response(result="OK", lines=()):
    """Mimic an aioimaplib Response."""
    return SimpleNamespace(result=result, lines=list(lines))


def mock_imap_client(capabilities=("IMAP4rev1",)) -> AsyncMock:
    """An aioimaplib client that greets and accepts LOGIN."""
    client = AsyncMock()
    client.wait_hello_from_server = AsyncMock()
    client.protocol = MagicMock(capabilities=list(capabilities))
    client.has_capability = MagicMock(side_effect=lambda name: name in capabilities)
    client.login = AsyncMock(return_value=imap_response("OK", [b"LOGIN completed"]))
    return client


class FakeIMAPServer:
    """
    Scripted IMAP server behind a patched aioimaplib.

    `uids` lists the mailbox contents in sequence order. FETCH answers in
    ascending sequence order, as real servers do. Every connection gets a
    fresh client, kept in `clients`.
    """

    def __init__(self, uids=(), uidvalidity=1):
        self.uids = list(uids)
        self.uidvalidity = uidvalidity
        self.select_errors: list[Exception] = []
        self.clients: list[AsyncMock] = []

    def new_client(self, **kwargs) -> AsyncMock:
        client = mock_imap_client()
        client.select = AsyncMock(side_effect=self._select)
        client.fetch = AsyncMock(side_effect=self._fetch)
        client.uid_search = AsyncMock(
            return_value=imap_response("OK", [b"SEARCH", b"SEARCH completed."])
        )
        client.logout = AsyncMock(return_value=imap_response("OK", [b"LOGOUT completed"]))
        self.clients.append(client)
        return client

    async def _select(self, name):
        if self.select_errors:
            raise self.select_errors.pop(0)
        return imap_response("OK", [
            f"{len(self.uids)} EXISTS".encode(),
            f"OK [UIDVALIDITY {self.uidvalidity}] UIDs valid".encode(),
            b"[READ-WRITE] SELECT completed.",
        ])

    async def _fetch(self, message_set, items):
        first, last = (int(n) for n in message_set.split(":"))
        lines = []
        for seq in range(first, last + 1):
            uid = self.uids[seq - 1]
            header = f"From: alice@example.com\r\nSubject: message {uid}\r\n\r\n".encode()
            lines += [
                f"{seq} FETCH (UID {uid} RFC822.HEADER {{{len(header)}}}".encode(),
                bytearray(header),
                b" BODY[1] NIL)",
            ]
        lines.append(b"Fetch completed.")
        return imap_response("OK", lines)


class FakeSession:
    """
    In-memory mail session.

    Each fetch consumes the next queued batch; the last batch keeps being
    returned once the queue runs dry, like a mailbox nobody is writing to.
    Batches are lists of UIDs / RawAttributes, or an exception to raise.
    """

    def __init__(self, account=None, timeout=None):
        self.account = account
        self.timeout = timeout
        self.connected = False
        self.authenticated = False
        self.connect_error: Exception | None = None
        self.auth_error: Exception | None = None
        self.fetch_delay = 0.0
        self.disconnects = 0
        self.uidvalidity = 1
        self.calls: list = []
        self._batches: list = []

    @property
    def is_authenticated(self) -> bool:
        return self.connected and self.authenticated

    def push(self, *batches) -> None:
        """Queue batches; an int stands for a single-message batch."""
        for batch in batches:
            if isinstance(batch, int):
                batch = [batch]
            self._batches.append(batch)

    async def connect(self) -> None:
        self.calls.append("connect")
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    async def authenticate(self) -> None:
        self.calls.append("authenticate")
        if self.auth_error:
            raise self.auth_error
        self.authenticated = True

    async def select_mailbox(self, name: str) -> MailboxInfo:
        self.calls.append(("select", name))
        return MailboxInfo(name=name, exists=len(self._batches), uidvalidity=self.uidvalidity)

    async def search(self, criteria: str) -> list[int]:
        self.calls.append(("search", criteria))
        return []

    async def fetch_range(self, count: int) -> list[RawAttributes]:
        self.calls.append(("fetch", count))
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if not self._batches:
            return []
        batch = self._batches.pop(0) if len(self._batches) > 1 else self._batches[0]
        if isinstance(batch, Exception):
            raise batch
        return [make_raw(item) if isinstance(item, int) else item for item in batch]

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        self.disconnects += 1
        self.connected = False
        self.authenticated = False


@pytest.fixture
def sample_account():
    """Create a sample Account for testing."""
    return Account(
        user="test@example.com",
        secret="hunter2",
        address="imap.example.com:993",
    )


@pytest.fixture
def fake_session():
    """A fresh in-memory mail session."""
    return FakeSession()


@pytest.fixture
def protocol_error():
    """A cycle-level failure as the IMAP session would raise it."""
    return IMAPError("Fetch 1:1 failed: ['NO server busy']")


@pytest.fixture
def start_engine(fake_session):
    """
    Factory that starts a WatchEngine on the fake session.

    Keyword arguments override WatchConfig fields; the default interval is
    short so polling tests finish quickly.
    """
    async def _start(**overrides):
        settings = {"interval": 0.01, "max_backoff": 1.0, **overrides}
        return await WatchEngine.start(
            "test@example.com",
            "hunter2",
            "imap.example.com:993",
            config=WatchConfig(**settings),
            session_factory=lambda account, timeout: fake_session,
        )

    return _start


@pytest.fixture
def imap_server():
    """A FakeIMAPServer that IMAPSession connects to over a patched aioimaplib."""
    server = FakeIMAPServer()
    with patch("mailwatch.imap.client.aioimaplib") as mock_imap:
        mock_imap.IMAP4_SSL.side_effect = server.new_client
        yield server
