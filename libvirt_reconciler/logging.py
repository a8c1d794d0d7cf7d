"""
Loguru 配置模块 - 统一管理项目的日志记录

此模块提供了基于 Loguru 的日志配置，支持：
- 控制台和文件日志输出
- 日志轮转和压缩
- 上下文绑定（资源类型、资源名称）
- 异步调和流程的耗时记录
"""

import functools
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, List

from loguru import logger

from .config import Config

# 默认日志格式
DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS ZZ}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

# 简化的生产环境格式
PRODUCTION_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS ZZ} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)

# 控制台格式（带颜色）
CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | "
    "<level>{message}</level>"
)


class LoggingManager:
    """日志系统管理器"""

    def __init__(self, config: Config):
        """
        初始化日志管理器

        Args:
            config: 配置对象
        """
        self.config = config
        self._handler_ids: List[int] = []

    def setup_logging(self) -> None:
        """设置 Loguru 日志配置"""
        # 移除默认处理器
        logger.remove()

        self._add_console_handler()

        if self.config.logging.file:
            self._add_file_handler()

        self._configure_third_party_loggers()

    def _add_console_handler(self) -> None:
        """添加控制台日志处理器"""
        is_debug = self.config.logging.level == "DEBUG"
        console_format = DEFAULT_FORMAT if is_debug else CONSOLE_FORMAT

        handler_id = logger.add(
            sys.stderr,
            format=console_format,
            level=self.config.logging.level,
            colorize=True,
            backtrace=is_debug,
            diagnose=is_debug,
            enqueue=True,  # 线程安全（libvirt 调用运行在线程池中）
            catch=True
        )
        self._handler_ids.append(handler_id)

    def _add_file_handler(self) -> None:
        """添加文件日志处理器"""
        log_file = Path(self.config.logging.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        handler_id = logger.add(
            str(log_file),
            format=PRODUCTION_FORMAT,
            level=self.config.logging.level,
            rotation=self.config.logging.rotation,
            retention=self.config.logging.retention,
            compression="zip",
            backtrace=False,
            diagnose=False,
            enqueue=True,
            catch=True
        )
        self._handler_ids.append(handler_id)

    def _configure_third_party_loggers(self) -> None:
        """配置第三方库的日志级别"""
        is_debug = self.config.logging.level == "DEBUG"
        for logger_name in ("asyncio", "libvirt"):
            logging.getLogger(logger_name).setLevel(
                logging.WARNING if not is_debug else logging.INFO
            )

    def cleanup(self) -> None:
        """清理日志处理器"""
        for handler_id in self._handler_ids:
            try:
                logger.remove(handler_id)
            except ValueError:
                # 处理器已被移除
                pass
        self._handler_ids.clear()


def get_logger(name: str) -> Any:
    """
    获取带有模块名称绑定的 logger 实例

    Args:
        name: 模块名称，通常是 __name__

    Returns:
        绑定了模块名称的 logger 实例
    """
    return logger.bind(name=name)


def configure_logging(config: Config) -> LoggingManager:
    """
    配置项目日志系统

    Args:
        config: 配置对象

    Returns:
        日志管理器实例
    """
    logging_manager = LoggingManager(config)
    logging_manager.setup_logging()
    return logging_manager


class LogContext:
    """日志上下文管理器，用于绑定结构化数据到日志记录"""

    def __init__(self, **context_data):
        """
        初始化日志上下文

        Args:
            **context_data: 要绑定到日志的上下文数据（例如 kind、resource）
        """
        self.context_data = context_data
        self.bound_logger = None

    def __enter__(self):
        """进入上下文"""
        self.bound_logger = logger.bind(**self.context_data)
        return self.bound_logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        """退出上下文"""
        self.bound_logger = None


# 异步性能监控装饰器
def log_async_performance(threshold_ms: float = 1000.0, level: str = "INFO"):
    """
    异步性能监控装饰器，记录异步函数执行时间

    Args:
        threshold_ms: 执行时间阈值（毫秒），超过此值会记录警告
        level: 日志级别
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            func_logger = get_logger(func.__module__)
            start_time = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.perf_counter() - start_time) * 1000
                func_logger.error(
                    "❌ async {}() failed after {:.2f}ms with {}: {}",
                    func.__name__,
                    duration_ms,
                    type(e).__name__,
                    str(e)
                )
                raise

            duration_ms = (time.perf_counter() - start_time) * 1000
            if duration_ms > threshold_ms:
                func_logger.warning(
                    "⚠️ async {}() took {:.2f}ms (threshold: {:.2f}ms)",
                    func.__name__,
                    duration_ms,
                    threshold_ms
                )
            else:
                func_logger.log(
                    level,
                    "⏱️ async {}() took {:.2f}ms",
                    func.__name__,
                    duration_ms
                )
            return result

        return wrapper
    return decorator
