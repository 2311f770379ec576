from loguru import logger
import sys
from pathlib import Path
import logging


CONSOLE_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {message}"


class InterceptHandler(logging.Handler):
    """Intercept standard library logging and forward to loguru.

    This allows uvicorn, sqlalchemy and other libraries that use the logging
    module to be captured by loguru and use the same sinks/formatting.
    """

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        # find caller depth so loguru shows correct origin
        logger.opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


def configure(level: str = "INFO", log_dir: Path = Path("./logs"), to_file: bool = True):
    """Install the console sink and, optionally, the rotating JSON file sink.

    Called once by the application factory; tests leave loguru's defaults alone.
    """
    # Remove default handlers to avoid duplicate logs
    logger.remove()

    # Console sink: human readable, colorized
    logger.add(sys.stdout, level=level, format=CONSOLE_FORMAT, colorize=True)

    # File sink: daily rotation, JSON serialized, asynchronous (enqueue)
    if to_file:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / "filevault-{time:YYYY-MM-DD}.log"),
            level=level,
            rotation="00:00",
            retention="14 days",
            serialize=True,
            enqueue=True,
            compression="zip",
        )

    # Intercept standard logging
    logging.root.handlers = [InterceptHandler()]
    for name in ("uvicorn.access", "uvicorn.error", "fastapi", "sqlalchemy.engine"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.setLevel(logging.INFO if name != "sqlalchemy.engine" else logging.WARNING)
