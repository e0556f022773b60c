"""
============================================================================
UPTIME SENTINEL - LOGGING UTILITY
============================================================================
Loguru based logging: console, rotating file and error-file sinks,
named child loggers and a couple of helper decorators.

License: MIT
============================================================================
"""

import sys
from typing import Optional

from loguru import logger

from config.settings import LoggingSettings, Settings


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]} | {name}:{function}:{line} - {message}"


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure the loguru sinks from settings.

    Removes any previously installed sinks so it can be called again
    (tests, reconfiguration) without duplicating output.

    Args:
        settings: Application settings; a default ``LoggingSettings``
            is used when omitted.
    """
    log_settings: LoggingSettings = settings.logging if settings else LoggingSettings()
    level = log_settings.level.value

    logger.remove()
    logger.configure(extra={"name": "sentinel"})

    if log_settings.console_enabled:
        logger.add(
            sys.stdout,
            format=CONSOLE_FORMAT,
            level=level,
            colorize=log_settings.console_colored,
            backtrace=True,
            diagnose=False,
        )

    if log_settings.file_enabled:
        log_settings.file_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_settings.file_path,
            format=FILE_FORMAT,
            level=level,
            rotation=log_settings.file_rotation,
            retention=log_settings.file_retention,
            compression=log_settings.file_compression,
            serialize=log_settings.json_enabled,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    if log_settings.error_file_enabled:
        log_settings.error_file_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_settings.error_file_path,
            format=FILE_FORMAT,
            level="ERROR",
            rotation="1 day",
            retention="7 days",
            compression=log_settings.file_compression,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    logger.info("Logging system initialized")
    logger.info(f"Log level: {level}")
    logger.info(f"Console logging: {log_settings.console_enabled}")
    logger.info(f"File logging: {log_settings.file_enabled}")


def get_logger(name: Optional[str] = None):
    """
    Get logger instance with optional name.

    Args:
        name: Logger name (usually the component name)

    Returns:
        Logger instance
    """
    if name:
        return logger.bind(name=name)
    return logger.bind(name="sentinel")


# ============================================================================
# SPECIALIZED LOGGERS
# ============================================================================

class MonitorLogger:
    """
    Specialized logger for probe outcomes and alert transitions.
    """

    def __init__(self):
        self.logger = get_logger("Monitor")

    def log_check(
        self,
        target_id: int,
        url: str,
        success: bool,
        latency_ms: Optional[float] = None,
        error: Optional[str] = None,
    ):
        """Log a monitoring check."""
        if success:
            latency = f"{latency_ms:.0f}ms" if latency_ms is not None else "n/a"
            self.logger.debug(f"✓ target={target_id} {url} up ({latency})")
        else:
            self.logger.warning(f"✗ target={target_id} {url} down: {error}")

    def log_downtime(self, target_id: int, url: str, error: Optional[str] = None):
        """Log downtime event."""
        self.logger.error(f"Downtime confirmed for target {target_id} ({url}): {error}")

    def log_recovery(self, target_id: int, url: str, downtime_seconds: int):
        """Log recovery event."""
        self.logger.info(
            f"Recovery detected for target {target_id} ({url}) - Downtime: {downtime_seconds}s"
        )


# ============================================================================
# END OF LOGGER MODULE
# ============================================================================
