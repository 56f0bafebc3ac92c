"""SQLAlchemy ORM models.

- base: Common metadata, type annotations and the status enum
- applications: Loan applications and their document metadata
"""

from loanintake.db.models.applications import LoanApplication, LoanDocument
from loanintake.db.models.base import ApplicationStatus, Base, metadata

__all__ = [
    "ApplicationStatus",
    "Base",
    "LoanApplication",
    "LoanDocument",
    "metadata",
]
