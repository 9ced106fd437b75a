"""Session-scoped conversation engine.

Key Components:
    - ConversationStore: in-memory session table, per-session locks, TTL sweep
    - ConversationManager: session lifecycle and multi-turn exchanges
    - Session / Turn / SessionBudget: the conversation domain model
"""

from conversation.manager import ConversationManager
from conversation.models import (
    ConversationStatus,
    ConversationSummary,
    InvalidTransition,
    Session,
    SessionBudget,
    StartResult,
    Turn,
    TurnResult,
    TurnRole,
)
from conversation.store import ConversationStore

__all__ = [
    "ConversationManager",
    "ConversationStatus",
    "ConversationStore",
    "ConversationSummary",
    "InvalidTransition",
    "Session",
    "SessionBudget",
    "StartResult",
    "Turn",
    "TurnResult",
    "TurnRole",
]
