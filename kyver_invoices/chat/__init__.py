"""Chat surface: command gateway and Slack session."""
from .gateway import ChatInteraction, ChatReply, CommandGateway

__all__ = ["ChatInteraction", "ChatReply", "CommandGateway"]
