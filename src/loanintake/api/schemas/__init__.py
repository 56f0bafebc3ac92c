"""Request and response schemas for the loan intake API."""

from loanintake.api.schemas.applications import (
    ApplicationStatusResponse,
    ApplicationSubmittedResponse,
    DocumentResponse,
    SubmittedDocument,
)

__all__ = [
    "ApplicationStatusResponse",
    "ApplicationSubmittedResponse",
    "DocumentResponse",
    "SubmittedDocument",
]
