"""API routers.

- applications: Loan application submission, status and documents
"""

from loanintake.api.routers.applications import router as applications_router

__all__ = ["applications_router"]
