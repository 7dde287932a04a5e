from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(Base):
    __tablename__ = "documents"

    id            = Column(Integer, primary_key=True, index=True)
    name          = Column(String, nullable=False)
    hash          = Column(String(64), index=True, unique=True, nullable=False)
    uri           = Column(String)
    provider_name = Column("google_name", String)
    mime_type     = Column(String)
    size          = Column(Integer, default=0)
    status        = Column(String, nullable=False, default="processing")
    usage_count   = Column(Integer, nullable=False, default=0)
    last_used_at  = Column(DateTime(timezone=True))
    created_at    = Column(DateTime(timezone=True), default=utcnow)


class AppSettings(Base):
    __tablename__ = "app_settings"

    id                       = Column(Integer, primary_key=True)
    system_instruction       = Column(Text)
    marketing_instruction    = Column(Text)
    gemini_api_key           = Column(String)
    whatsapp_token           = Column(String)
    whatsapp_phone_number_id = Column(String)
    verify_token             = Column(String)
    fb_app_secret            = Column(String)
    fb_page_token            = Column(String)
    messenger_token          = Column(String)
    instagram_token          = Column(String)
    webhook_verified_at      = Column(DateTime(timezone=True))
    updated_at               = Column(DateTime(timezone=True), default=utcnow)


class Profile(Base):
    __tablename__ = "profiles"

    id          = Column(String, primary_key=True)
    first_name  = Column(String)
    last_name   = Column(String)
    email       = Column(String, index=True)
    role        = Column(String, nullable=False, default="viewer")
    status      = Column(String, nullable=False, default="active")
    bio         = Column(Text)
    job_title   = Column(String)
    last_active = Column(DateTime(timezone=True))
    updated_at  = Column(DateTime(timezone=True), default=utcnow)


class RequestLog(Base):
    __tablename__ = "request_logs"

    id            = Column(Integer, primary_key=True, index=True)
    channel       = Column(String, nullable=False, index=True)
    query_text    = Column(Text)
    response_text = Column(Text)
    is_success    = Column(Boolean, nullable=False, default=True)
    user_id       = Column(String, index=True)
    input_tokens  = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    latency_ms    = Column(Integer)
    created_at    = Column(DateTime(timezone=True), default=utcnow, index=True)
