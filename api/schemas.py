"""Pydantic schemas for the relay API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be empty")
    return value.strip()


class SendTextRequest(BaseModel):
    to: str = Field(..., description="jid, phone number, contact name, group alias or group subject")
    message: str = Field(..., description="Message text to send")

    @field_validator("to")
    @classmethod
    def _to_not_blank(cls, v: str) -> str:
        return _not_blank(v)

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, v: str) -> str:
        _not_blank(v)
        return v


class SendImageRequest(BaseModel):
    to: str = Field(..., description="Same forms as /send")
    image_url: str = Field(..., description="Publicly reachable image URL; the bridge fetches it")
    caption: str = ""

    @field_validator("to", "image_url")
    @classmethod
    def _required(cls, v: str) -> str:
        return _not_blank(v)


class SendDocumentRequest(BaseModel):
    to: str = Field(..., description="Same forms as /send")
    document_url: str = Field(..., description="Publicly reachable file URL; the bridge fetches it")
    file_name: str | None = None
    mimetype: str | None = None

    @field_validator("to", "document_url")
    @classmethod
    def _required(cls, v: str) -> str:
        return _not_blank(v)


class SendResponse(BaseModel):
    ok: bool = True
    to: str
    jid: str
    queued: bool = True
    job_id: str
    msg_id: str


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    matches: list[dict[str, str]] | None = None
    retry_after_seconds: int | None = None
    status: str | None = None


class ContactRequest(BaseModel):
    name: str
    msisdn: str | None = None
    jid: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        return _not_blank(v)


class GroupAliasRequest(BaseModel):
    name: str
    jid: str

    @field_validator("name", "jid")
    @classmethod
    def _required(cls, v: str) -> str:
        return _not_blank(v)


class WebhookEvent(BaseModel):
    """Bridge webhook envelope; `data` is left raw and normalized by the inbound pipeline."""

    model_config = ConfigDict(extra="allow")

    event: str = ""
    instance: str | None = None
    data: Any = None
