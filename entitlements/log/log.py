"""loguru 日志：拦截标准 logging，并为每条记录附带当前 request_id。"""

import logging
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as loguru_logger

from entitlements.core.middleware import get_current_request_id
from entitlements.settings import settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[request_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

# 每次 HTTP 调用都会打 INFO 的第三方 logger
_CHATTY_LOGGERS = ("httpx", "httpcore")


class InterceptHandler(logging.Handler):
    """将标准 logging 的日志转发到 loguru。"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame = logging.currentframe()
        depth = 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        loguru_logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _with_request_id(record: dict) -> None:
    record["extra"].setdefault("request_id", get_current_request_id() or "-")


def configure_logging(*, debug: bool, log_to_file: bool = False, log_file_path: Optional[str] = None):
    level = "DEBUG" if debug else "INFO"

    loguru_logger.remove()
    loguru_logger.configure(patcher=_with_request_id)
    loguru_logger.add(sink=sys.stderr, level=level, format=LOG_FORMAT)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)

    # 文件日志按 request_id 聚合排障（webhook / 对账链路）
    if log_to_file:
        file_path = Path(log_file_path or "logs/app.log")
        file_path.parent.mkdir(parents=True, exist_ok=True)
        loguru_logger.add(
            sink=str(file_path),
            level=level,
            format=LOG_FORMAT,
            rotation="100 MB",
            retention="10 days",
            enqueue=True,
            backtrace=False,
            diagnose=False,
        )

    return loguru_logger


logger = configure_logging(
    debug=settings.debug,
    log_to_file=settings.log_to_file,
    log_file_path=settings.log_file_path,
)
