import json
from datetime import datetime
from typing import Any, List

from pydantic import EmailStr, Field, field_validator

from signdesk.schemas.common import ORMModel


class SignerIn(ORMModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr


class EnvelopeCreate(ORMModel):
    job_id: str = Field(min_length=1, max_length=120)
    document_id: str = Field(min_length=1, max_length=120)
    signers: List[SignerIn] = Field(min_length=1)


class SignerRead(ORMModel):
    name: str
    email: str
    signing_url: str
    completed: bool
    completed_at: datetime | None
    position: int


class EnvelopeRead(ORMModel):
    id: str
    job_id: str
    document_id: str
    provider: str
    status: str
    provider_reference: str | None
    certificate_hash: str
    signed_at: datetime | None
    created_at: datetime
    signers: List[SignerRead] = Field(default_factory=list)


class AuditEntryRead(ORMModel):
    id: str
    signature_id: str
    sequence: int
    action: str
    actor: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_json")
    created_at: str
    previous_hash: str
    entry_hash: str

    @field_validator("metadata", mode="before")
    @classmethod
    def decode_metadata(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value else {}
        return value


class ChainVerificationRead(ORMModel):
    signature_id: str
    valid: bool
    entries_checked: int
    broken_entry_id: str | None = None
    reason: str | None = None


class FlagRequest(ORMModel):
    reason: str = Field(default="operator_request", min_length=1, max_length=120)


class SyncRequest(ORMModel):
    include_certificate: bool = True
