"""
Logging configuration.
Everything under the "coursepay" logger tree; settlement anomalies (review, conflicts) are WARNING.
"""
import logging
import sys

# Third-party loggers that are chatty at INFO (stripe logs every API request)
_QUIET = ("stripe", "sqlalchemy.engine", "multipart")


def setup_logging(
    level: int | str = logging.INFO,
    format_string: str | None = None,
) -> None:
    if format_string is None:
        format_string = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=format_string,
        stream=sys.stdout,
        force=True,
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "coursepay"):
        logging.getLogger(name).setLevel(level)
    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
