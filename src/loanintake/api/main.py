"""Loan intake API service entry point.

This module provides the application instance for ASGI servers (uvicorn)
and a run() function for direct execution.

The app is created using the factory pattern from loanintake.api.create_app().
"""

import logging

from loanintake.api import create_app

logger = logging.getLogger(__name__)

# This is what uvicorn references: loanintake.api.main:app
app = create_app()


def run() -> None:
    """Run the API server using uvicorn.

    This function is called by the loanintake-api console script
    defined in pyproject.toml.
    """
    import uvicorn

    from loanintake.core.logging import configure_logging
    from loanintake.core.settings import get_settings

    # Invalid configuration exits here, before the server binds
    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info("Starting Loan Intake API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "loanintake.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
