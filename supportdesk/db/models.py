"""Ticket workflow tables."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class DepartmentRow(Base):
    __tablename__ = "departments"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ProfileRow(Base):
    __tablename__ = "profiles"

    id = Column(Text, primary_key=True)
    email = Column(Text, nullable=True, index=True)
    full_name = Column(Text, nullable=True)
    role = Column(String(20), nullable=False, default="user", index=True)  # user, teacher, agent, admin
    department_id = Column(Text, ForeignKey("departments.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class TicketRow(Base):
    __tablename__ = "tickets"

    id = Column(Text, primary_key=True)
    ticket_number = Column(String(32), nullable=False, unique=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    priority = Column(String(20), nullable=False, default="normal", index=True)
    status = Column(String(20), nullable=False, default="open", index=True)
    category = Column(Text, nullable=True, index=True)
    tags = Column(ARRAY(Text), nullable=False, default=list)

    created_by = Column(Text, ForeignKey("profiles.id"), nullable=False, index=True)
    assigned_to = Column(Text, ForeignKey("profiles.id"), nullable=True, index=True)
    department_id = Column(Text, ForeignKey("departments.id", ondelete="SET NULL"), nullable=True, index=True)

    sla_due_at = Column(DateTime(timezone=True), nullable=True, index=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    resolution = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, index=True)


class TicketMessageRow(Base):
    __tablename__ = "ticket_messages"

    id = Column(Text, primary_key=True)
    ticket_id = Column(Text, ForeignKey("tickets.id"), nullable=False, index=True)
    sender_id = Column(Text, ForeignKey("profiles.id"), nullable=False)
    body = Column(Text, nullable=False)
    is_internal = Column(Boolean, nullable=False, default=False)
    message_type = Column(String(20), nullable=False, default="comment")
    created_at = Column(DateTime(timezone=True), nullable=False)


class TicketAttachmentRow(Base):
    __tablename__ = "ticket_attachments"

    id = Column(Text, primary_key=True)
    ticket_id = Column(Text, ForeignKey("tickets.id"), nullable=False, index=True)
    filename = Column(Text, nullable=False)
    size = Column(Integer, nullable=False)
    content_type = Column(Text, nullable=False)
    storage_path = Column(Text, nullable=False)
    uploaded_by = Column(Text, ForeignKey("profiles.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class TicketActivityRow(Base):
    __tablename__ = "ticket_activities"

    id = Column(Text, primary_key=True)
    ticket_id = Column(Text, ForeignKey("tickets.id"), nullable=False)
    actor_id = Column(Text, ForeignKey("profiles.id"), nullable=False)
    action = Column(String(40), nullable=False)
    details = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_ticket_activities_ticket_created", "ticket_id", "created_at"),)


class SettingRow(Base):
    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
