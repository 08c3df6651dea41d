"""
Centralized logging configuration for bgd-manager.

bgd.log is the free-text operational log. Errors are duplicated into
error.log and every proxy configuration change goes to nginx-updates.log.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

NGINX_LOGGER = "bgd_manager.nginx"
DEPLOYMENT_LOGGER = "bgd_manager.deployment_lifecycle"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in ("app_name", "slot", "deployment_id", "duration_ms"):
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter for console and file logs."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = False):
        self.use_colors = use_colors
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        if self.use_colors and record.levelname in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(
    log_dir: str = "/var/log/bgd-manager",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> None:
    """
    Configure logging for a CLI invocation.

    Args:
        log_dir: Directory for log files
        console_level: Console logging level
        file_level: File logging level
        use_json: Use JSON formatting for files
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep

    Raises:
        PermissionError: If the log directory cannot be created or written
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, console_level))
    console_handler.setFormatter(HumanReadableFormatter(use_colors=sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    # Operational log
    main_handler = logging.handlers.RotatingFileHandler(
        log_path / "bgd.log", maxBytes=max_bytes, backupCount=backup_count
    )
    main_handler.setLevel(getattr(logging, file_level))
    main_handler.setFormatter(file_formatter)
    root_logger.addHandler(main_handler)

    error_handler = logging.handlers.RotatingFileHandler(
        log_path / "error.log", maxBytes=max_bytes, backupCount=backup_count
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_formatter)
    root_logger.addHandler(error_handler)

    # Proxy updates get their own file and stay out of the operational log
    nginx_logger = logging.getLogger(NGINX_LOGGER)
    nginx_logger.handlers.clear()
    nginx_handler = logging.handlers.RotatingFileHandler(
        log_path / "nginx-updates.log", maxBytes=max_bytes, backupCount=backup_count
    )
    nginx_handler.setFormatter(file_formatter)
    nginx_logger.addHandler(nginx_handler)
    nginx_logger.setLevel(logging.DEBUG)
    nginx_logger.propagate = False

    for noisy in ("httpx", "httpcore", "docker", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root_logger.debug(
        f"Logging initialized - Console: {console_level}, File: {file_level}, "
        f"Directory: {log_dir}, JSON: {use_json}"
    )


def setup_console_logging(verbose: bool = False) -> None:
    """Console-only logging, used when the log directory is not writable."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def log_nginx_operation(
    operation: str,
    success: bool,
    details: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> None:
    """
    Log a proxy configuration operation.

    Args:
        operation: Operation type (write, validate, reload, restart)
        success: Whether the operation succeeded
        details: Additional operation details
        error: Error message if failed
    """
    logger = logging.getLogger(NGINX_LOGGER)

    message = f"Nginx {operation}: {'SUCCESS' if success else 'FAILED'}"
    if error:
        message += f" - {error}"
    if details:
        message += f" - {json.dumps(details, default=str)}"

    if success:
        logger.info(message)
    else:
        logger.error(message)


def log_deployment_operation(
    operation: str, app_name: str, details: Optional[Dict[str, Any]] = None, level: str = "INFO"
) -> None:
    """
    Log a deployment lifecycle operation to the operational log.

    Args:
        operation: Operation type (deploy, shift, cutover, rollback, cleanup)
        app_name: Application name
        details: Additional operation details
        level: Log level (INFO, WARNING, ERROR)
    """
    logger = logging.getLogger(DEPLOYMENT_LOGGER)

    message = f"[{app_name}] {operation}"
    if details:
        message += f" - {json.dumps(details, default=str)}"

    log_method = getattr(logger, level.lower())
    log_method(message, extra={"app_name": app_name})
