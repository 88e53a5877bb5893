"""Conversation session controller and its stall monitor."""
from .session_controller import ConversationController
from .stall import StallDecision, StallMonitor

__all__ = ["ConversationController", "StallDecision", "StallMonitor"]
