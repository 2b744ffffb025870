# =============================================================================
# IMAP Module
# =============================================================================
# Everything that talks to, or interprets data from, the mail store:
#   - IMAPSession: connect, authenticate, select, search and fetch
#   - Decoder: turns raw FETCH attribute sets into Message objects
#
# This module uses aioimaplib for async IMAP operations, so the polling
# loop never blocks the event loop while waiting on the network.
# =============================================================================

from mailwatch.imap.client import (
    IMAPSession,
    IMAPError,
    IMAPConnectionError,
    IMAPAuthenticationError,
    ConnectionState,
    MailboxInfo,
)
from mailwatch.imap.decoder import (
    RawAttributes,
    DecodeError,
    decode,
    decode_batch,
)

__all__ = [
    # Session
    "IMAPSession",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "ConnectionState",
    "MailboxInfo",
    # Decoder
    "RawAttributes",
    "DecodeError",
    "decode",
    "decode_batch",
]
