import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = "{time} | {level} | {module}:{function}:{line} | {message} | {extra}"
OPS_CHANNEL = "ops"


def _is_ops_record(record) -> bool:
    return record["extra"].get("channel") == OPS_CHANNEL


def ops_log_path(log_path: str) -> Path:
    """Sibling file of the main log that only receives the ops channel."""
    path = Path(log_path)
    return path.with_name(f"{path.stem}.ops{path.suffix or '.log'}")


def setup_logging(level: str, log_path: str) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=LOG_FORMAT,
    )
    logger.add(
        log_path,
        level="DEBUG",
        format=LOG_FORMAT,
        rotation="100 KB",
        compression="zip",
    )
    # Exhausted deliveries need a human, keep them out of the debug noise.
    logger.add(
        ops_log_path(log_path),
        level="WARNING",
        format=LOG_FORMAT,
        filter=_is_ops_record,
        rotation="1 MB",
        compression="zip",
    )
