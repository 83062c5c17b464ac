import logging
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_level="INFO"):
    """
    Configures logging for the client. Safe to call more than once.
    """
    root = logging.getLogger()
    root.setLevel(log_level)

    for existing in root.handlers:
        if getattr(existing, "_figlink", False):
            existing.setLevel(log_level)
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler._figlink = True  # type: ignore[attr-defined]

    formatter = logging.Formatter(LOG_FORMAT)
    handler.setFormatter(formatter)

    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
