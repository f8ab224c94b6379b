import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Final
from typing import Iterator

from loguru import logger

LOG_FORMAT: Final[str] = "[{level}] {time:YYYY-MM-DD HH:mm:ss} - {message}"
BANNER_WIDTH: Final[int] = 60


def configure_stderr(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)


@contextmanager
def file_sink(path: Path, level: str = "INFO") -> Iterator[Path]:
    """Mirrors everything logged inside the block into `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    sink_id = logger.add(path, format=LOG_FORMAT, level=level)
    try:
        yield path
    finally:
        logger.remove(sink_id)


def log_section(title: str) -> None:
    logger.info("=" * BANNER_WIDTH)
    logger.info(title)
    logger.info("=" * BANNER_WIDTH)
