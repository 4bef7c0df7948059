"""
Utility helpers for the zlink companion client
Logging setup, PID file management and retry/backoff policies
"""

import sys
import logging
import logging.handlers
import asyncio
import secrets
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

import psutil

logger = logging.getLogger("zlink_node.helpers")

LOG_FORMAT = '%(asctime)s.%(msecs)03d [%(levelname)-8s] %(name)s:%(lineno)d - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    component: str = "zlink",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    enable_console: bool = True,
    fmt: str = LOG_FORMAT
) -> logging.Logger:
    """
    Configure logging for a component

    Args:
        level: Logging level name
        log_file: Optional path to a rotating log file
        component: Logger name the handlers are attached to ("" for root)
        max_bytes: Maximum log file size before rotation
        backup_count: Number of rotated files to keep
        enable_console: Whether to log to stdout
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    component_logger = logging.getLogger(component)
    component_logger.setLevel(log_level)

    for handler in component_logger.handlers[:]:
        component_logger.removeHandler(handler)

    formatter = logging.Formatter(fmt=fmt, datefmt=LOG_DATE_FORMAT)

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        component_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        component_logger.addHandler(file_handler)

    logging.captureWarnings(True)

    # Set specific log levels for noisy libraries
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('websockets').setLevel(logging.WARNING)

    component_logger.debug(f"Logging configured - Level: {level}, File: {log_file}")
    return component_logger


class PIDManager:
    """PID file management for daemons launched by the supervisor"""

    @staticmethod
    def write_pid_file(pidfile: Path, pid: int) -> Path:
        pidfile = Path(pidfile)
        pidfile.parent.mkdir(parents=True, exist_ok=True)
        with open(pidfile, 'w') as f:
            f.write(f"{pid}\n")
        pidfile.chmod(0o644)
        logger.debug(f"PID file created: {pidfile}")
        return pidfile

    @staticmethod
    def read_pid_file(pidfile: Path) -> Optional[int]:
        try:
            with open(pidfile, 'r') as f:
                return int(f.read().strip())
        except FileNotFoundError:
            return None
        except (ValueError, OSError) as e:
            logger.warning(f"Could not read PID file {pidfile}: {e}")
            return None

    @staticmethod
    def remove_pid_file(pidfile: Path) -> bool:
        try:
            Path(pidfile).unlink()
            logger.debug(f"PID file removed: {pidfile}")
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Failed to remove PID file {pidfile}: {e}")
            return False

    @staticmethod
    def is_process_running(pid: int) -> bool:
        try:
            process = psutil.Process(pid)
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    @classmethod
    def stale_pid(cls, pidfile: Path) -> Optional[int]:
        """PID recorded in pidfile if that process is still alive"""
        pid = cls.read_pid_file(pidfile)
        if pid is None:
            return None
        if cls.is_process_running(pid):
            return pid
        logger.warning(f"Removing stale PID file for process {pid}")
        cls.remove_pid_file(pidfile)
        return None


class Backoff:
    """Exponential backoff with optional jitter"""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 30.0,
                 exponential_base: float = 2.0, jitter: bool = False):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (self.exponential_base ** attempt))
        if self.jitter:
            delay = delay * (0.5 + secrets.SystemRandom().random())
        return delay


class RetryManager:
    """Bounded async retries with exponential backoff"""

    def __init__(
        self,
        max_retries: int = 3,
        backoff: Optional[Backoff] = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.max_retries = max_retries
        self.backoff = backoff or Backoff()
        self.retry_on = retry_on
        self.sleep = sleep

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await func until it succeeds or retries run out

        Raises:
            The last exception once all attempts failed
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                last_exception = e
                if attempt == self.max_retries:
                    break

                delay = self.backoff.delay(attempt)
                logger.debug(
                    f"Attempt {attempt + 1}/{self.max_retries} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await self.sleep(delay)

        raise last_exception


def generate_token(nbytes: int = 16) -> str:
    """Cryptographically secure random hex token"""
    return secrets.token_hex(nbytes)
