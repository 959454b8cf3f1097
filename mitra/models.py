from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text

from .db import Base

# order status values
PENDING = "pending"
CONFIRMED = "confirmed"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"

ACTIVE_JOB_STATUSES = (CONFIRMED, IN_PROGRESS, COMPLETED)


class Partner(Base):
    __tablename__ = "partners"
    id = Column(Integer, primary_key=True)
    owner_name = Column(String, nullable=False)
    business_name = Column(String, nullable=False)
    business_type = Column(String, nullable=False)
    phone_number = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    address = Column(String, nullable=False)
    city = Column(String, nullable=False)
    province = Column(String, nullable=False)
    password_hash = Column(String, nullable=False)
    balance = Column(Float, nullable=False, default=0.0)
    commission_rate = Column(Float, nullable=False, default=15.0)
    status = Column(String, default="pending")  # pending | active
    verification_status = Column(String, default="pending")  # pending | verified
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    service_name = Column(String, nullable=False)
    price_per_hour = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=True)
    commission_amount = Column(Float, nullable=True)
    status = Column(String, default=PENDING, index=True)
    partner_id = Column(Integer, ForeignKey("partners.id"), nullable=True, index=True)
    customer_name = Column(String, nullable=True)
    address = Column(String, nullable=True)
    scheduled_date = Column(String, nullable=True)
    scheduled_time = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    estimated_duration = Column(Integer, nullable=True)  # hours
    actual_duration = Column(Integer, nullable=True)  # seconds
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    rating = Column(Integer, nullable=True)
    review = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True)
    content = Column(Text, nullable=False)
    sender_id = Column(String, nullable=False)
    sender_type = Column(String, nullable=False)  # partner | admin | member | system
    room_id = Column(String, index=True, nullable=False)
    message_type = Column(String, default="text")
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class TopupRequest(Base):
    __tablename__ = "topup_requests"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("partners.id"), nullable=False, index=True)
    user_type = Column(String, default="partner")
    amount = Column(Float, nullable=False)
    payment_method = Column(String, default="transfer")
    partner_name = Column(String, nullable=True)
    whatsapp = Column(String, nullable=True)
    status = Column(String, default="pending")  # pending | approved | rejected
    created_at = Column(DateTime, default=datetime.utcnow)
