"""bgd-manager - Zero-downtime blue/green release orchestration for containerized services."""

__version__ = "1.0.0"

from .errors import BGDError, ErrorCode

__all__ = ["BGDError", "ErrorCode", "__version__"]
