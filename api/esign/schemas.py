from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

FieldType = Literal["signature", "initials", "text", "date", "checkbox"]

class SignerCreate(BaseModel):
    client_id: Optional[str] = None
    name: str
    email: str
    routing_order: Optional[int] = None

class FieldCreate(BaseModel):
    page: int = 1
    x: float
    y: float
    w: float
    h: float
    type: FieldType
    required: bool = True
    name: Optional[str] = None
    signer_key: str

class EnvelopeCreate(BaseModel):
    name: str
    owner_name: Optional[str] = None
    owner_email: str
    filename: str = "document.pdf"
    document_base64: str
    expires_at: Optional[datetime] = None
    reminders_enabled: bool = True
    reminder_interval_days: int = Field(3, ge=1)
    signers: List[SignerCreate] = Field(min_length=1)
    fields: List[FieldCreate] = []

class SignComplete(BaseModel):
    values: Dict[str, Any] = {}  # field_id -> value (text/date/"true"/signature data URL) or {"value": ...}

class SignDecline(BaseModel):
    reason: Optional[str] = None
