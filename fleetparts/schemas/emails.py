"""
schemas/emails.py — Pydantic models for email thread and webhook endpoints

Business Rules:
- Merge source and target must differ
- Inbound parse webhook payloads arrive camelCase from the automation
  service; snake_case names are accepted too

Called by: routers/emails.py, routers/webhooks.py, services/thread_reconciliation.py
Depends on: pydantic, models.enums
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from ..models.enums import EmailThreadStatus
from ..utils import as_utc


class OrphanAssign(BaseModel):
    thread_id: int
    quote_request_id: int


class MergeThreads(BaseModel):
    source_thread_id: int
    target_thread_id: int

    @model_validator(mode="after")
    def distinct_threads(self) -> MergeThreads:
        if self.source_thread_id == self.target_thread_id:
            raise ValueError("Source and target threads must differ")
        return self


class ThreadStatusUpdate(BaseModel):
    status: EmailThreadStatus


class InboundAttachment(BaseModel, populate_by_name=True):
    filename: str
    content_type: str = Field(default="application/octet-stream", alias="contentType")
    size: int = 0
    url: str | None = None
    extracted_text: str | None = Field(default=None, alias="extractedText")


class InboundEmail(BaseModel, populate_by_name=True):
    """A supplier reply delivered by the automation service."""
    thread_id: str = Field(alias="threadId")
    message_id: str | None = Field(default=None, alias="messageId")
    from_address: str = Field(alias="from")
    to: list[str] = Field(default_factory=list)
    subject: str = ""
    body: str = ""
    body_html: str | None = Field(default=None, alias="bodyHtml")
    received_at: datetime | None = Field(default=None, alias="receivedAt")
    in_reply_to: str | None = Field(default=None, alias="inReplyTo")
    attachments: list[InboundAttachment] = Field(default_factory=list)

    @field_validator("to", mode="before")
    @classmethod
    def split_recipients(cls, v):
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v or []

    @field_validator("thread_id", "from_address")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Field must not be blank")
        return v

    @field_validator("received_at")
    @classmethod
    def received_in_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)
