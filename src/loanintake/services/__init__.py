"""Loan intake service layer.

This package contains the submission coordinator and its collaborators:
- ObjectStoreClient: S3-compatible storage integration
- ObjectStager: Staging of document bytes ahead of metadata
- MetadataStore: Transactional application and document rows
- EventPublisher: SubmissionEvents on partitioned Redis streams
- StatusCache / StatusLookupService: Cache-aside status read path
- SubmissionCoordinator: The multi-store "submit application" protocol
"""

from loanintake.services.event_publisher import EventPublisher, PublishAck, SubmissionEvent
from loanintake.services.metadata_store import ApplicationRecord, DocumentSummary, MetadataStore
from loanintake.services.object_stager import DocumentUpload, ObjectStager, StagedDocument
from loanintake.services.status_cache import StatusCache, StatusLookupService, StatusResult
from loanintake.services.storage import ObjectStoreClient
from loanintake.services.submission import (
    SubmissionCoordinator,
    SubmissionRequest,
    SubmissionResult,
)

__all__ = [
    "ApplicationRecord",
    "DocumentSummary",
    "DocumentUpload",
    "EventPublisher",
    "MetadataStore",
    "ObjectStager",
    "ObjectStoreClient",
    "PublishAck",
    "StagedDocument",
    "StatusCache",
    "StatusLookupService",
    "StatusResult",
    "SubmissionCoordinator",
    "SubmissionEvent",
    "SubmissionRequest",
    "SubmissionResult",
]
