"""Client-side state for marketplace buyer/seller conversations."""

from .actions import MessageActions
from .backend import Backend, InMemoryBackend, SequentialIds
from .channels import (
    Channel,
    ChannelRegistry,
    LocalHub,
    MessageInserted,
    PresenceSynced,
    RowChanged,
    Transport,
    TypingStarted,
    TypingStopped,
)
from .cli import main, simulate
from .config import MessagingConfig, SupabaseSettings
from .conversations import ConversationListAggregator
from .errors import (
    BackendError,
    BlockedSenderError,
    MessagingError,
    NotAuthenticatedError,
    TransportError,
    ValidationError,
)
from .indicators import PresenceReconciler, TypingReconciler
from .message_store import MessageStore
from .models import ConversationDetail, ConversationSummary, Message, PresenceRecord, Profile, TypingUser
from .read_state import ReadStateCommitter
from .runtime import MessagingRuntime
from .session import ConversationSession
from .timers import ManualScheduler, TimerRegistry

__all__ = [
    "Backend",
    "BackendError",
    "BlockedSenderError",
    "Channel",
    "ChannelRegistry",
    "ConversationDetail",
    "ConversationListAggregator",
    "ConversationSession",
    "ConversationSummary",
    "InMemoryBackend",
    "LocalHub",
    "ManualScheduler",
    "Message",
    "MessageActions",
    "MessageInserted",
    "MessageStore",
    "MessagingConfig",
    "MessagingError",
    "MessagingRuntime",
    "NotAuthenticatedError",
    "PresenceReconciler",
    "PresenceRecord",
    "PresenceSynced",
    "Profile",
    "ReadStateCommitter",
    "RowChanged",
    "SequentialIds",
    "SupabaseSettings",
    "TimerRegistry",
    "Transport",
    "TransportError",
    "TypingReconciler",
    "TypingStarted",
    "TypingStopped",
    "TypingUser",
    "ValidationError",
    "main",
    "simulate",
]
