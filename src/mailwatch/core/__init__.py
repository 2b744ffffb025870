# =============================================================================
# mailwatch Core Module
# =============================================================================
# Plain dataclasses with no third-party dependencies, importable from
# anywhere without circular imports:
#   - Account: credentials and the mailbox to watch
#   - Message: one delivered message (UID, header, body)
#   - MessageHeader: case-insensitive multi-valued header fields
# =============================================================================

from mailwatch.core.account import Account
from mailwatch.core.message import Message, MessageHeader

__all__ = [
    "Account",
    "Message",
    "MessageHeader",
]
