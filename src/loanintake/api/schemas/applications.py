"""Pydantic schemas for the loan application endpoints.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

# NOTE: datetime and UUID must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from typing import TYPE_CHECKING, Literal
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

if TYPE_CHECKING:
    from loanintake.services.metadata_store import ApplicationRecord, DocumentSummary
    from loanintake.services.status_cache import StatusResult


class CamelModel(BaseModel):
    """Base schema serializing field names as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubmittedDocument(CamelModel):
    """A document accepted with a submission."""

    document_id: UUID = Field(..., description="Document identifier")
    document_type: str = Field(..., description="Form field the file was uploaded under")
    file_name: str = Field(..., description="Original filename")
    file_size: int = Field(..., description="Size in bytes")
    content_type: str = Field(..., description="MIME type")

    @classmethod
    def from_summary(cls, summary: DocumentSummary) -> SubmittedDocument:
        return cls(
            document_id=summary.id,
            document_type=summary.document_type,
            file_name=summary.file_name,
            file_size=summary.file_size,
            content_type=summary.content_type,
        )


class ApplicationSubmittedResponse(CamelModel):
    """Response for a submitted loan application."""

    application_id: UUID = Field(..., description="Application identifier")
    id: UUID = Field(..., description="Application identifier (row ID)")
    status: str = Field(..., description="Lifecycle status, PENDING on submission")
    customer_id: str
    loan_amount: float
    loan_purpose: str
    income: float
    created_at: datetime
    documents: list[SubmittedDocument] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: ApplicationRecord) -> ApplicationSubmittedResponse:
        return cls(
            application_id=record.id,
            id=record.id,
            status=record.status.value,
            customer_id=record.customer_id,
            loan_amount=float(record.loan_amount),
            loan_purpose=record.loan_purpose,
            income=float(record.income),
            created_at=record.created_at,
            documents=[SubmittedDocument.from_summary(doc) for doc in record.documents],
        )


class ApplicationStatusResponse(CamelModel):
    """Status of an application, tagged with where it was read from."""

    application_id: UUID
    status: str
    source: Literal["cache", "database"] = Field(
        ..., description="cache values may lag the database by up to the cache TTL"
    )

    @classmethod
    def from_result(cls, result: StatusResult) -> ApplicationStatusResponse:
        return cls(
            application_id=result.application_id,
            status=result.status,
            source=result.source.value,
        )


class DocumentResponse(CamelModel):
    """Document metadata of a committed application."""

    id: UUID
    document_type: str
    file_name: str
    file_size: int
    content_type: str
    uploaded_at: datetime

    @classmethod
    def from_summary(cls, summary: DocumentSummary) -> DocumentResponse:
        return cls(
            id=summary.id,
            document_type=summary.document_type,
            file_name=summary.file_name,
            file_size=summary.file_size,
            content_type=summary.content_type,
            uploaded_at=summary.uploaded_at,
        )
