"""Chat client: conversation state and the streaming session."""

from ragchat.client.session import ChatSession, PromotionScheduler
from ragchat.client.state import ChatState, ToolCallView

__all__ = ["ChatSession", "ChatState", "PromotionScheduler", "ToolCallView"]
