# =============================================================================
# mailwatch: Polling Watcher for New Mail
# =============================================================================
#
# Keeps an authenticated IMAP session open, checks a mailbox on a fixed
# interval and delivers each newly arrived message exactly once, either
# into a bounded queue or straight to a callback.
#
# Features:
#   - IMAP over SSL or STARTTLS (aioimaplib)
#   - Baseline on first fetch: mail already waiting is not reported
#   - Backpressure instead of dropping when the consumer falls behind
#   - Explicit stop(), optional cycle timeout and failure backoff
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mailwatch"

from mailwatch.config import Config, ConfigError, WatchConfig
from mailwatch.core import Account, Message, MessageHeader
from mailwatch.imap import (
    DecodeError,
    IMAPAuthenticationError,
    IMAPConnectionError,
    IMAPError,
    IMAPSession,
)
from mailwatch.watch import CallbackSink, DeliverySink, QueueSink, WatchEngine

__all__ = [
    "__version__",
    "__app_name__",
    # Models
    "Account",
    "Message",
    "MessageHeader",
    # Config
    "Config",
    "ConfigError",
    "WatchConfig",
    # IMAP
    "IMAPSession",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "DecodeError",
    # Watching
    "WatchEngine",
    "DeliverySink",
    "QueueSink",
    "CallbackSink",
]
