# sqlassist/models.py
from sqlalchemy import Boolean, Column, Integer, String, DateTime, Text, Index
import datetime

from sqlassist.db import Base


class ConversationMemory(Base):
    __tablename__ = "conversation_memory"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False)
    session_id = Column(String(128), nullable=False)
    query = Column(Text, nullable=False)
    sql = Column(Text, nullable=True)
    reasoning = Column(Text, nullable=True)
    source = Column(String(32), nullable=False, default="llm")
    created_at = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)

    __table_args__ = (Index("ix_memory_user_session", "user_id", "session_id", "created_at"),)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    session_id = Column(String(128), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # "user" | "assistant"
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)


class SqlTemplateRecord(Base):
    __tablename__ = "sql_templates"

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(String(128), unique=True, index=True, nullable=False)
    name = Column(String(256), nullable=False)
    keywords_json = Column(Text, nullable=False, default="[]")
    sql = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String(128), nullable=True)
    is_system = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.datetime.utcnow, nullable=False)
