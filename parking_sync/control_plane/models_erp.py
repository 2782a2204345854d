from __future__ import annotations

import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, JSON, UniqueConstraint

from .db import Base, utcnow

def _uuid() -> str:
    return str(uuid.uuid4())

class SoftOneConnection(Base):
    __tablename__ = "softone_connections"
    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    provider = Column(String, nullable=False, default="softone")

    # Endpoint; None falls back to settings.SOFTONE_API_URL
    base_url = Column(String, nullable=True)

    # Login parameters
    username = Column(String, nullable=False)
    password_encrypted = Column(Text, nullable=False)   # ivhex:taghex:cipherhex
    app_id = Column(String, nullable=False)
    company = Column(String, default="1001")
    branch = Column(String, default="1000")
    module = Column(String, default="0")
    refid = Column(String, default="15")
    registered_name = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

class SoftOneIntegration(Base):
    __tablename__ = "softone_integrations"
    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    connection_id = Column(String, ForeignKey("softone_connections.id"), nullable=False)

    object_name = Column(String, nullable=False)          # "CUSTOMER", "INST" ...
    table_name = Column(String, nullable=False)           # remote TABLE, e.g. "TRDR"
    table_dbname = Column(String, nullable=True)
    config_json = Column(JSON, nullable=False, default=dict)

    # Sync watermark (naive UTC)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

class CronJobProgress(Base):
    __tablename__ = "cron_job_progress"
    __table_args__ = (UniqueConstraint("job_type", "integration_id", "model_name", name="uq_cron_job_progress_key"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_type = Column(String, nullable=False)
    integration_id = Column(String, nullable=False, default="")
    model_name = Column(String, nullable=False, default="")
    last_offset = Column(Integer, nullable=False, default=0)
    total_seen = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class CronJobLog(Base):
    __tablename__ = "cron_job_logs"
    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=True)
    integration_id = Column(String, nullable=True, index=True)
    job_type = Column(String, nullable=False)
    status = Column(String, nullable=False)               # success | partial | error
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    stats = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
