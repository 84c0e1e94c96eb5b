from .base import Base
from .models import Attachment, Conversation, Message, MessageAttachment

__all__ = [
    "Base",
    "Conversation",
    "Message",
    "Attachment",
    "MessageAttachment",
]
