from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OpportunityCreate(BaseModel):
    name: str = Field(min_length=1)
    stage_name: str = Field(min_length=1)
    type: str | None = None
    description: str | None = None
    owner_user_id: UUID | None = None
    primary_contact_id: UUID | None = None
    account_id: UUID | None = None


class OpportunityUpdate(BaseModel):
    id: UUID
    name: str | None = Field(default=None, min_length=1)
    stage_name: str | None = Field(default=None, min_length=1)
    type: str | None = None
    description: str | None = None
    owner_user_id: UUID | None = None
    primary_contact_id: UUID | None = None
    account_id: UUID | None = None

    @model_validator(mode="after")
    def validate_required_fields(self) -> OpportunityUpdate:
        for field_name in ("name", "stage_name"):
            if field_name in self.model_fields_set and getattr(self, field_name) is None:
                raise ValueError(f"{field_name} cannot be null")
        return self


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    type: str | None
    stage_name: str
    description: str | None
    is_closed: bool
    owner_user_id: UUID | None
    primary_contact_id: UUID | None
    account_id: UUID | None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None


class OpportunitySnapshot(BaseModel):
    """Field values of an opportunity captured before an update is applied."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    name: str
    type: str | None
    stage_name: str | None
    description: str | None
    is_closed: bool
    owner_user_id: UUID | None
    primary_contact_id: UUID | None
    account_id: UUID | None


class OpportunityIdsRequest(BaseModel):
    ids: list[UUID] = Field(min_length=1)


class OpportunityDeleteResult(BaseModel):
    id: UUID
    deleted: bool
    error: str | None = None


class EmailMessage(BaseModel):
    to_addresses: list[str] = Field(min_length=1)
    subject: str
    body: str
