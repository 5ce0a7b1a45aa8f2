"""Direct-message timeline synchronization engine."""

from .aggregator import aggregate, load_conversations
from .agent import ScriptedAgent, Topic
from .channel import BroadcastChannel, ChannelSubscription
from .config import EngineConfig, load_config
from .errors import FetchUnavailable, MalformedEvent, MessagingError, SendFailed, WriteError
from .keys import conversation_key, key_participants, partner_of
from .models import ConversationSummary, Message, MessageDraft, PendingSend, Profile, TypingSignal
from .pipeline import SendPipeline
from .presence import LocalTypingPublisher, TypingState, TypingStateMachine
from .session import ConversationSession, Messenger
from .store import InMemoryMessageStore
from .timeline import Timeline, TimelineReconciler

__all__ = [
    "aggregate",
    "load_conversations",
    "ScriptedAgent",
    "Topic",
    "BroadcastChannel",
    "ChannelSubscription",
    "EngineConfig",
    "load_config",
    "FetchUnavailable",
    "MalformedEvent",
    "MessagingError",
    "SendFailed",
    "WriteError",
    "conversation_key",
    "key_participants",
    "partner_of",
    "ConversationSummary",
    "Message",
    "MessageDraft",
    "PendingSend",
    "Profile",
    "TypingSignal",
    "SendPipeline",
    "LocalTypingPublisher",
    "TypingState",
    "TypingStateMachine",
    "ConversationSession",
    "Messenger",
    "InMemoryMessageStore",
    "Timeline",
    "TimelineReconciler",
]
