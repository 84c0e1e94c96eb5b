from .attachments import Attachment
from .chat import Conversation, Message, MessageAttachment

__all__ = [
    "Attachment",
    "Conversation",
    "Message",
    "MessageAttachment",
]
