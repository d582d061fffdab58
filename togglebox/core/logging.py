"""
Logging setup for host applications.

The library only creates module loggers under the ``togglebox`` namespace and
never configures handlers on import. Applications (or the FastAPI
integration) call configure_logging() to get the standard format.
"""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(debug: bool = False) -> None:
    """Configure root logging with the ToggleBox format."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
    )
    logging.getLogger("togglebox").setLevel(logging.DEBUG if debug else logging.INFO)
