"""
Encrypted conversation storage, flow state and the contact directory.

Conversation content is encrypted at rest with the process-wide
`common.crypto.KeyManager`; the contact directory is plaintext.
"""

from .models import Conversation, ConversationMetadata, ConversationStats, ExportDocument, Message, Sender

__all__ = [
    "Conversation",
    "ConversationMetadata",
    "ConversationStats",
    "ExportDocument",
    "Message",
    "Sender",
]
