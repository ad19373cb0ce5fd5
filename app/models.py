"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import BigInteger, Column, Integer, JSON, String
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class MessageRecord(Base):
    """
    Table: messages
    Primary Key: primary_id (ensures idempotent upserts)
    """
    __tablename__ = "messages"

    primary_id = Column(String, primary_key=True)
    secondary_id = Column(String, nullable=True, index=True)
    conversation_id = Column(String, nullable=False, index=True)
    from_id = Column(String, nullable=False)
    to_id = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    body = Column(JSON, nullable=False)
    created_at = Column(BigInteger, nullable=False, index=True)  # epoch ms
    status = Column(String, nullable=False)
    status_timestamp = Column(BigInteger, nullable=True)  # epoch ms
    display_name = Column(String, nullable=False)


class ContactRecord(Base):
    """
    Table: contacts
    Primary Key: conversation_id (one contact per conversation)
    """
    __tablename__ = "contacts"

    conversation_id = Column(String, primary_key=True)
    display_name = Column(String, nullable=False)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message = Column(JSON, nullable=True)  # Message copied by value
