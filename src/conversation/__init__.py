"""
Per-chat conversation flow of the sticker bot.

- states: tagged states, events, effects and the pure `transition` function.
- effects: runs create/append work against the registry and sticker service.
- engine: per-session locking, flow tracking and effect dispatch.
"""

from .effects import EffectRunner
from .engine import ConversationEngine
from .states import Reply, transition

__all__ = ["ConversationEngine", "EffectRunner", "Reply", "transition"]
