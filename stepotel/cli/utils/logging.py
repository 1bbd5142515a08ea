import logging
import sys


logger = logging.getLogger("stepotel")


def configure_logging(debug: bool):
    """
    Configures the logging system based on the debug flag.

    Diagnostics go to stderr; stdout carries the annotated step output.
    """
    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter("%(message)s")
    handler.setFormatter(formatter)

    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)

    if not logger.hasHandlers():
        logger.addHandler(handler)
