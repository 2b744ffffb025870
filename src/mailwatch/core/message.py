# =============================================================================
# Message Model
# =============================================================================
# Represents one message surfaced by the watcher. Compared to a full mail
# client this is deliberately small:
#   - UID: the server-assigned identifier within the watched mailbox
#   - Header: every header field, queryable case-insensitively
#   - Body: the primary body part, exactly as the server sent it
#
# Messages are immutable once the decoder has built them. Whoever receives
# one from a sink owns it; nothing else keeps a reference.
# =============================================================================

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field


class MessageHeader:
    """
    Ordered, read-only multi-mapping of header fields.

    Field names are matched case-insensitively, and a field may carry
    several values (e.g. multiple "Received" lines). Values keep the order
    they had in the original header block.

    Example:
        >>> header = MessageHeader.from_pairs([
        ...     ("From", "alice@example.com"),
        ...     ("Received", "from a"),
        ...     ("Received", "from b"),
        ... ])
        >>> header.get("from")
        'alice@example.com'
        >>> header.get_all("RECEIVED")
        ['from a', 'from b']
    """

    __slots__ = ("_pairs", "_index")

    def __init__(self, pairs: Iterable[tuple[str, str]] = ()) -> None:
        self._pairs: tuple[tuple[str, str], ...] = tuple(
            (str(name), str(value)) for name, value in pairs
        )
        index: dict[str, list[str]] = {}
        for name, value in self._pairs:
            index.setdefault(name.lower(), []).append(value)
        self._index = {key: tuple(values) for key, values in index.items()}

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> "MessageHeader":
        """Build a header from (name, value) pairs in header order."""
        return cls(pairs)

    def get(self, name: str, default: str | None = None) -> str | None:
        """Return the first value of a field, or default if absent."""
        values = self._index.get(name.lower())
        return values[0] if values else default

    def get_all(self, name: str) -> list[str]:
        """Return every value of a field in header order (empty if absent)."""
        return list(self._index.get(name.lower(), ()))

    def items(self) -> list[tuple[str, str]]:
        """All (name, value) pairs in their original order."""
        return list(self._pairs)

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._index

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for name, _ in self._pairs:
            if name.lower() not in seen:
                seen.add(name.lower())
                yield name

    def __len__(self) -> int:
        return len(self._index)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MessageHeader):
            return NotImplemented
        return self._pairs == other._pairs

    def __hash__(self) -> int:
        return hash(self._pairs)

    def __repr__(self) -> str:
        return f"MessageHeader({list(self._pairs)!r})"


@dataclass(frozen=True)
class Message:
    """
    A newly arrived message.

    Attributes:
        uid: IMAP UID. Increases monotonically within a mailbox but is not
             globally unique and may have gaps.
        header: Parsed header fields.
        body: Primary body part (BODY[1]) as raw bytes.

    Example:
        >>> msg = Message(uid=101, header=MessageHeader([("Subject", "Hi")]))
        >>> msg.subject
        'Hi'
    """

    uid: int
    header: MessageHeader = field(default_factory=MessageHeader)
    body: bytes = b""

    @property
    def subject(self) -> str:
        """The Subject header, or an empty string."""
        return self.header.get("Subject", "") or ""

    @property
    def sender(self) -> str:
        """The From header, or an empty string."""
        return self.header.get("From", "") or ""

    def __str__(self) -> str:
        return f"[{self.uid}] {self.sender}: {self.subject}"

    def __repr__(self) -> str:
        return (
            f"Message(uid={self.uid}, subject={self.subject!r}, "
            f"from={self.sender!r}, body={len(self.body)} bytes)"
        )
