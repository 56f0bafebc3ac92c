"""Core configuration and logging for the loan intake service."""
