# =============================================================================
# Message Decoder
# =============================================================================
# Turns the attribute set of one FETCH response into a Message.
#
# Key responsibilities:
#   - Pull the UID out of the attribute set
#   - Parse the RFC822.HEADER block into a MessageHeader
#   - Copy the BODY[1] segment through untouched
#
# Design notes:
#   - decode() is pure: no I/O, no shared state
#   - One undecodable message must never take its siblings down with it,
#     so decode_batch() logs and skips failures instead of raising
# =============================================================================

import email.errors
import email.header
import email.policy
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from email.parser import Parser

from mailwatch.core import Message, MessageHeader

logger = logging.getLogger(__name__)

# FETCH attribute names, as the server echoes them back
UID = "UID"
HEADER = "RFC822.HEADER"
BODY = "BODY[1]"

# Folded header lines: CRLF (or bare LF) followed by whitespace
_FOLD_RE = re.compile(r"\r?\n(?=[ \t])")

# Defects that mean the header block is not a header block at all
_FATAL_DEFECTS = (
    email.errors.MissingHeaderBodySeparatorDefect,
    email.errors.FirstHeaderLineIsContinuationDefect,
)


@dataclass
class RawAttributes:
    """
    The attributes returned for one message in a FETCH response.

    Attributes:
        seq: Message sequence number the server reported.
        attrs: Attribute values keyed by upper-case attribute name.
               UID is an int; RFC822.HEADER and BODY[1] are bytes.
    """
    seq: int
    attrs: dict[str, bytes | int] = field(default_factory=dict)

    def get(self, name: str, default=None):
        """Look up an attribute by (case-insensitive) name."""
        return self.attrs.get(name.upper(), default)


class DecodeError(Exception):
    """Raised when a fetched attribute set cannot be turned into a Message."""
    pass


def decode(raw: RawAttributes) -> Message:
    """
    Decode one fetched attribute set.

    Args:
        raw: Attributes of a single message from a FETCH response.

    Returns:
        The decoded Message.

    Raises:
        DecodeError: If the UID is missing or invalid, or the header block
                     is missing or malformed.
    """
    uid = _decode_uid(raw)

    header_block = raw.get(HEADER)
    if not isinstance(header_block, (bytes, bytearray)) or not header_block.strip():
        raise DecodeError(f"Message {uid} has no header block")

    header = _parse_header(uid, bytes(header_block))

    body = raw.get(BODY, b"")
    if body is None:
        body = b""
    if not isinstance(body, (bytes, bytearray)):
        raise DecodeError(f"Message {uid} has a non-bytes body: {type(body).__name__}")

    return Message(uid=uid, header=header, body=bytes(body))


def decode_batch(raws: Iterable[RawAttributes]) -> list[Message]:
    """
    Decode every attribute set of a fetch, skipping the ones that fail.

    Order of the surviving messages is preserved.
    """
    messages = []
    for raw in raws:
        try:
            messages.append(decode(raw))
        except DecodeError as e:
            logger.warning(f"Skipping message #{raw.seq}: {e}")
    return messages


def _decode_uid(raw: RawAttributes) -> int:
    value = raw.get(UID)
    if value is None:
        raise DecodeError(f"Message #{raw.seq} has no UID")
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("ascii", errors="replace").strip()
    try:
        uid = int(value)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Message #{raw.seq} has an invalid UID: {value!r}") from e
    if uid <= 0:
        raise DecodeError(f"Message #{raw.seq} has an invalid UID: {uid}")
    return uid


def _parse_header(uid: int, block: bytes) -> MessageHeader:
    """Parse an RFC 5322 header section into a MessageHeader."""
    parsed = Parser(policy=email.policy.compat32).parsestr(_header_text(block), headersonly=True)

    for defect in parsed.defects:
        if isinstance(defect, _FATAL_DEFECTS):
            raise DecodeError(f"Message {uid} has a malformed header: {defect.__class__.__name__}")

    pairs = [(name, _decode_header_value(value)) for name, value in parsed.items()]
    if not pairs:
        raise DecodeError(f"Message {uid} has an empty header")
    return MessageHeader.from_pairs(pairs)


def _header_text(block: bytes) -> str:
    """Raw header bytes as text; 8-bit values are UTF-8 (RFC 6532), else Latin-1."""
    try:
        return block.decode("utf-8")
    except UnicodeDecodeError:
        return block.decode("latin-1")


def _decode_header_value(value) -> str:
    """Unfold a header value and decode RFC 2047 encoded words."""
    if isinstance(value, email.header.Header):
        value = str(value)
    value = _FOLD_RE.sub("", value)
    try:
        parts = email.header.decode_header(value)
    except email.errors.HeaderParseError:
        return value
    try:
        return str(email.header.make_header(parts))
    except (LookupError, UnicodeDecodeError):
        pass

    # Encoded words mixed with raw 8-bit text: decode part by part
    result = ""
    for part, charset in parts:
        if isinstance(part, bytes):
            try:
                result += part.decode(charset or "raw-unicode-escape", errors="replace")
            except LookupError:
                result += part.decode("utf-8", errors="replace")
        else:
            result += part
    return result
