"""observability/ — structured logging for AIRAssist."""

from airassist.observability.logger import bind_user, clear_user, get_logger, setup_logging

__all__ = ["setup_logging", "get_logger", "bind_user", "clear_user"]
