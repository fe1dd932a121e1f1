import logging
import traceback
from typing import Optional, Union

DEFAULT_FORMAT = '%(asctime)s - %(levelname)s - %(threadName)s - %(name)s - %(message)s'


def _resolve_level(level: Union[int, str]) -> int:
	if isinstance(level, str):
		level = logging.getLevelName(level.upper())
		if not isinstance(level, int):
			level = logging.INFO
	return level


def setup_logging(level: Optional[Union[int, str]] = None, fmt: Optional[str] = None) -> None:
	"""Configure root logging.
	Handlers are installed once (at INFO unless level is given). An explicit level
	is always applied to the root logger, even if something configured logging first.
	If fmt is not provided, a format that includes the worker thread name is used.
	"""
	root = logging.getLogger()
	if not root.handlers:
		logging.basicConfig(level=_resolve_level(level if level is not None else logging.INFO),
							format=fmt or DEFAULT_FORMAT)
		return
	if level is not None:
		root.setLevel(_resolve_level(level))


def get_logger(name: Optional[str] = None) -> logging.Logger:
	"""Return a module/logger by name, after ensuring logging is configured."""
	setup_logging()
	return logging.getLogger(name) if name else logging.getLogger(__name__)


def log_exception(logger: logging.Logger, message: str = "An error occurred", exc_info: Exception = None) -> None:
	"""Centralized exception logging with full traceback.

	Args:
		logger: Logger instance to use
		message: Custom error message to log before the traceback
		exc_info: Exception instance (if None, uses current exception context)
	"""
	logger.error(message)
	if exc_info is not None:
		logger.error(f"Exception type: {type(exc_info).__name__}")
		logger.error(f"Exception message: {str(exc_info)}")
		tb = "".join(traceback.format_exception(type(exc_info), exc_info, exc_info.__traceback__))
	else:
		tb = traceback.format_exc()
	logger.error("Full traceback:")
	logger.error(tb)
