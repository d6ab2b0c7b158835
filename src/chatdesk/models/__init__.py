"""Database models for users and their stored conversations."""
from chatdesk.models.conversation import Base, ConversationArchive
from chatdesk.models.user import User
