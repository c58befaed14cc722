import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once; repeated calls only adjust the level."""
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(h, "_storefront", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._storefront = True
    root.addHandler(handler)
    logging.getLogger(__name__).info("Logging configured at %s", level.upper())
