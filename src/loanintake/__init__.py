"""Loan Intake - loan application submission service.

Accepts a loan application with its supporting documents, records it in the
relational store, stages document bytes in the object store and announces the
submission on the event log.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
