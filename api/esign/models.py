from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field as ORMField

from .utils import utcnow

ENVELOPE_DRAFT = "draft"
ENVELOPE_PENDING = "pending"
ENVELOPE_COMPLETED = "completed"
ENVELOPE_EXPIRED = "expired"

SIGNER_PENDING = "pending"
SIGNER_SIGNED = "signed"
SIGNER_DECLINED = "declined"


class Envelope(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    owner_name: Optional[str] = None
    owner_email: str
    source_key: str
    source_hash: str
    status: str = ORMField(default=ENVELOPE_DRAFT, index=True)
    expires_at: Optional[datetime] = None
    reminders_enabled: bool = True
    reminder_interval_days: int = 3
    last_reminder_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    final_key: Optional[str] = None
    final_hash: Optional[str] = None
    audit_key: Optional[str] = None
    seal_level: Optional[str] = None  # cryptographic|visual|none


class Signer(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(foreign_key="envelope.id", index=True)
    name: str
    email: str
    routing_order: int = 1
    status: str = SIGNER_PENDING
    token: str = ORMField(index=True, unique=True)
    signed_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    signature_hash: Optional[str] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None


class Field(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(foreign_key="envelope.id", index=True)
    signer_id: int = ORMField(foreign_key="signer.id", index=True)
    page: int = 1
    x: float
    y: float
    w: float
    h: float
    type: str  # signature|initials|text|date|checkbox
    required: bool = True
    name: Optional[str] = None
    value: Optional[str] = None
    filled_at: Optional[datetime] = None


class Event(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    envelope_id: int = ORMField(foreign_key="envelope.id", index=True)
    actor: str  # system|owner|signer:<id>
    type: str   # created|sent|opened|signed|declined|reminded|completed|sealed|seal_degraded|audit_trail_failed|expired|notified
    meta_json: str = "{}"
    ip: Optional[str] = None
    ua: Optional[str] = None
    at: datetime = ORMField(default_factory=utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None
