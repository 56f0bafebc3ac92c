"""Loan application and document metadata models."""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution
from decimal import Decimal  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, Enum, ForeignKey, Index, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loanintake.db.models.base import ApplicationStatus, Base, TimestampTZ, UUIDPrimaryKey


class LoanApplication(Base):
    """A submitted loan application.

    Rows are written only by the submission coordinator, inside the same
    transaction as the application's document rows.
    """

    __tablename__ = "loan_applications"

    id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]

    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    loan_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    loan_purpose: Mapped[str] = mapped_column(String(255), nullable=False)
    income: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    status: Mapped[ApplicationStatus] = mapped_column(
        Enum(ApplicationStatus, name="application_status", create_constraint=True),
        nullable=False,
        default=ApplicationStatus.PENDING,
    )

    # Client-supplied key used to collapse retried submissions (optional)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    documents: Mapped[list[LoanDocument]] = relationship(
        "LoanDocument",
        back_populates="application",
        cascade="all, delete-orphan",
        order_by="LoanDocument.uploaded_at, LoanDocument.id",
    )

    __table_args__ = (
        Index("ix_loan_applications_customer_id", "customer_id"),
        Index("ix_loan_applications_created_at", "created_at"),
    )


class LoanDocument(Base):
    """Metadata of a document whose bytes live in the object store."""

    __tablename__ = "loan_documents"

    id: Mapped[UUIDPrimaryKey]
    uploaded_at: Mapped[TimestampTZ]

    application_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("loan_applications.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Taken from the multipart field the file arrived under
    document_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    # Storage handle into the object store
    storage_bucket: Mapped[str] = mapped_column(String(63), nullable=False)
    object_key: Mapped[str] = mapped_column(String(1024), nullable=False)

    application: Mapped[LoanApplication] = relationship(
        "LoanApplication",
        back_populates="documents",
    )

    __table_args__ = (Index("ix_loan_documents_application_id", "application_id"),)
