import logging
import os


def configure_logging(level: str | None = None) -> None:
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    # httpx logs every request line at INFO; keep it out of the relay log
    logging.getLogger("httpx").setLevel(logging.WARNING)
