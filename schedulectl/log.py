import sys

from loguru import logger

FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <7}</level> | "
    "<cyan>{extra[schedule_id]}</cyan> | {message}"
)


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with one that shows the schedule a record belongs to."""
    logger.remove()
    logger.configure(extra={"schedule_id": "-"})
    logger.add(sys.stderr, level=level, format=FORMAT)
