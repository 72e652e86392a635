"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, Integer, String, Text

from coursechat.storage import Base


class Message(Base):
    """
    A course chat message.

    Table: messages
    seq records insertion order and breaks timestamp ties.
    Rows are never removed; deletion sets is_deleted and redacts text.
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, unique=True, index=True)
    course_id = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=False)
    author_id = Column(String, nullable=False)
    author_display_name = Column(String, nullable=False)
    ts = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    is_deleted = Column(Boolean, nullable=False, default=False)
    original_text = Column(Text, nullable=True)


class UserPreference(Base):
    """Last selected course of a user, one row per user."""
    __tablename__ = "user_preferences"

    user_id = Column(String, primary_key=True)
    selected_course = Column(String, nullable=False)
