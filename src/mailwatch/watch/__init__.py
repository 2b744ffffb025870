# =============================================================================
# Watch Module
# =============================================================================
# The polling side of mailwatch:
#   - WatchEngine: session lifecycle, fetch cycle, dedup, polling loop
#   - Sinks: where new messages go (bounded queue or direct callback)
# =============================================================================

from mailwatch.watch.engine import (
    WatchEngine,
    WatchState,
    EngineState,
    MailSession,
)
from mailwatch.watch.sinks import (
    DeliverySink,
    QueueSink,
    CallbackSink,
    MessageHandler,
)

__all__ = [
    # Engine
    "WatchEngine",
    "WatchState",
    "EngineState",
    "MailSession",
    # Sinks
    "DeliverySink",
    "QueueSink",
    "CallbackSink",
    "MessageHandler",
]
