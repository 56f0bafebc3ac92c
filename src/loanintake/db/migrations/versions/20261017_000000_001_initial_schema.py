"""Initial schema: loan applications and document metadata.

Revision ID: 001
Revises: None
Create Date: 2026-10-17 00:00:00.000000+00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

APPLICATION_STATUSES = ("PENDING", "APPROVED", "REJECTED", "ERROR")


def upgrade() -> None:
    """Create loan_applications and loan_documents."""
    op.create_table(
        "loan_applications",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("customer_id", sa.String(255), nullable=False),
        sa.Column("loan_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("loan_purpose", sa.String(255), nullable=False),
        sa.Column("income", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*APPLICATION_STATUSES, name="application_status", create_constraint=True),
            nullable=False,
        ),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_loan_applications")),
        sa.UniqueConstraint("idempotency_key", name=op.f("uq_loan_applications_idempotency_key")),
    )
    op.create_index("ix_loan_applications_customer_id", "loan_applications", ["customer_id"])
    op.create_index("ix_loan_applications_created_at", "loan_applications", ["created_at"])

    op.create_table(
        "loan_documents",
        sa.Column("id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("application_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("document_type", sa.String(100), nullable=False),
        sa.Column("file_name", sa.String(500), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("content_type", sa.String(255), nullable=False),
        sa.Column("sha256", sa.String(64), nullable=False),
        sa.Column("storage_bucket", sa.String(63), nullable=False),
        sa.Column("object_key", sa.String(1024), nullable=False),
        sa.ForeignKeyConstraint(
            ["application_id"],
            ["loan_applications.id"],
            name=op.f("fk_loan_documents_application_id_loan_applications"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_loan_documents")),
    )
    op.create_index("ix_loan_documents_application_id", "loan_documents", ["application_id"])


def downgrade() -> None:
    """Drop loan_documents and loan_applications."""
    op.drop_index("ix_loan_documents_application_id", table_name="loan_documents")
    op.drop_table("loan_documents")
    op.drop_index("ix_loan_applications_created_at", table_name="loan_applications")
    op.drop_index("ix_loan_applications_customer_id", table_name="loan_applications")
    op.drop_table("loan_applications")
    sa.Enum(name="application_status").drop(op.get_bind(), checkfirst=True)
