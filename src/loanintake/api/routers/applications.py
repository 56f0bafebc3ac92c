"""Loan applications API router.

Handles submission of loan applications with their documents and the
read endpoints for status and document metadata.
"""

from __future__ import annotations

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Header, Request, Response, UploadFile, status

from loanintake.api.middleware.errors import NotFoundError, ServiceError, ValidationAPIError
from loanintake.api.schemas.applications import (
    ApplicationStatusResponse,
    ApplicationSubmittedResponse,
    DocumentResponse,
)
from loanintake.core.logging import get_correlation_id
from loanintake.services.metadata_store import (
    ApplicationNotFoundError,
    MetadataStore,
    MetadataStoreError,
)
from loanintake.services.object_stager import DocumentUpload
from loanintake.services.status_cache import StatusLookupService
from loanintake.services.submission import (
    GENERIC_SUBMISSION_ERROR,
    InvalidInputError,
    SubmissionCoordinator,
    SubmissionError,
    SubmissionRequest,
)

logger = logging.getLogger(__name__)

DOCUMENTS_FIELD = "documents"
IDEMPOTENT_REPLAYED_HEADER = "Idempotent-Replayed"
NOT_FOUND_MESSAGE = "Application not found."

router = APIRouter(
    prefix="/loans/applications",
    tags=["applications"],
    responses={
        400: {"description": "Invalid request"},
        500: {"description": "Internal server error"},
    },
)


# -----------------------------------------------------------------------------
# Dependencies (collaborators are built once per process in the app lifespan)
# -----------------------------------------------------------------------------


def get_coordinator(request: Request) -> SubmissionCoordinator:
    return request.app.state.coordinator


def get_metadata_store(request: Request) -> MetadataStore:
    return request.app.state.metadata_store


def get_status_lookup(request: Request) -> StatusLookupService:
    return request.app.state.status_lookup


Coordinator = Annotated[SubmissionCoordinator, Depends(get_coordinator)]
Store = Annotated[MetadataStore, Depends(get_metadata_store)]
StatusLookup = Annotated[StatusLookupService, Depends(get_status_lookup)]


def _parse_application_id(value: str) -> uuid.UUID:
    """Parse a path ID; a malformed ID cannot name an application."""
    try:
        return uuid.UUID(value)
    except ValueError:
        raise NotFoundError(NOT_FOUND_MESSAGE) from None


# -----------------------------------------------------------------------------
# Submission
# -----------------------------------------------------------------------------


@router.post(
    "",
    response_model=ApplicationSubmittedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a loan application",
    description="Stages documents, records the application and announces it downstream.",
)
async def submit_application(
    response: Response,
    coordinator: Coordinator,
    customer_id: Annotated[str | None, Form(alias="customerId")] = None,
    loan_amount: Annotated[str | None, Form(alias="loanAmount")] = None,
    loan_purpose: Annotated[str | None, Form(alias="loanPurpose")] = None,
    income: Annotated[str | None, Form()] = None,
    documents: Annotated[list[UploadFile] | None, File()] = None,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> ApplicationSubmittedResponse:
    """Submit a loan application with up to the configured number of documents.

    Returns:
        The committed application with status PENDING.

    Raises:
        ValidationAPIError: If fields or documents are invalid (400).
        ServiceError: If any store fails during submission (500).
    """
    uploads = [
        DocumentUpload(
            field_name=DOCUMENTS_FIELD,
            filename=upload.filename or "document",
            content_type=upload.content_type or "application/octet-stream",
            size=upload.size,
            stream=upload.file,
        )
        for upload in documents or []
    ]

    try:
        request = SubmissionRequest.from_form(
            customer_id=customer_id,
            loan_amount=loan_amount,
            loan_purpose=loan_purpose,
            income=income,
            idempotency_key=idempotency_key,
        )
        result = await coordinator.submit(request, uploads, correlation_id=get_correlation_id())
    except InvalidInputError as e:
        logger.info("Submission rejected: %s", e.message)
        raise ValidationAPIError(e.message) from e
    except SubmissionError as e:
        logger.error(
            "Application submission failed at %s: %s",
            e.stage,
            e.message,
            extra={
                "stage": e.stage,
                "application_id": str(e.application_id) if e.application_id else None,
            },
        )
        raise ServiceError(GENERIC_SUBMISSION_ERROR) from e

    if result.replayed:
        response.headers[IDEMPOTENT_REPLAYED_HEADER] = "true"

    return ApplicationSubmittedResponse.from_record(result.application)


# -----------------------------------------------------------------------------
# Read endpoints
# -----------------------------------------------------------------------------


@router.get(
    "/{application_id}",
    response_model=ApplicationStatusResponse,
    summary="Get application status",
)
async def get_application_status(
    application_id: str,
    lookup: StatusLookup,
) -> ApplicationStatusResponse:
    """Get the current status of an application.

    The ``source`` field tells whether the value came from the cache (and
    may be up to the cache TTL old) or from the database.
    """
    app_id = _parse_application_id(application_id)
    try:
        result = await lookup.get_status(app_id)
    except ApplicationNotFoundError:
        raise NotFoundError(NOT_FOUND_MESSAGE) from None
    except MetadataStoreError as e:
        logger.error(
            "Failed to get application status: %s",
            e,
            extra={"application_id": str(app_id)},
        )
        raise ServiceError() from e

    return ApplicationStatusResponse.from_result(result)


@router.get(
    "/{application_id}/documents",
    response_model=list[DocumentResponse],
    summary="List application documents",
)
async def list_application_documents(
    application_id: str,
    store: Store,
) -> list[DocumentResponse]:
    """List document metadata of an application in upload order.

    An unknown application has no documents.
    """
    try:
        app_id = uuid.UUID(application_id)
    except ValueError:
        return []

    try:
        documents = await store.list_documents(app_id)
    except MetadataStoreError as e:
        logger.error(
            "Failed to get documents: %s",
            e,
            extra={"application_id": str(app_id)},
        )
        raise ServiceError() from e

    return [DocumentResponse.from_summary(doc) for doc in documents]
