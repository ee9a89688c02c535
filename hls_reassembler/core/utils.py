"""
工具模块
包含日志、HTTP 会话、重试策略、取消令牌等通用工具
"""

import os
import time
import logging
import threading
import warnings
from typing import Callable, Dict, Optional, Tuple, Type
from urllib.parse import urlparse

import requests
from urllib3.exceptions import InsecureRequestWarning

from .config import BACKOFF_FIXED, DownloadConfig
from .errors import DownloadCancelled


def setup_logger(name: str, log_file: Optional[str] = None, console_output: bool = True) -> logging.Logger:
    """
    配置并返回日志记录器

    Args:
        name: 日志记录器名称
        log_file: 日志文件路径，为 None 时不写文件
        console_output: 是否输出到控制台

    Returns:
        logging.Logger: 配置好的日志记录器
    """
    logger = logging.getLogger(name)

    # 避免重复添加 handler
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def is_remote(source: str) -> bool:
    """判断是否为 http(s) 地址"""
    return urlparse(source).scheme in ('http', 'https')


def create_session(verify_ssl: bool = False, headers: Optional[Dict[str, str]] = None,
                   referer_url: Optional[str] = None) -> requests.Session:
    """
    创建配置好的 HTTP 会话

    Args:
        verify_ssl: 是否验证 SSL 证书
        headers: 自定义请求头
        referer_url: 用于推导 Referer 的地址（仅在请求头未指定 Referer 时生效）

    Returns:
        requests.Session: 配置好的会话对象
    """
    session = requests.Session()
    session.verify = verify_ssl

    if not verify_ssl:
        warnings.filterwarnings('ignore', category=InsecureRequestWarning)

    if headers:
        session.headers.update(headers)

    if referer_url and 'Referer' not in session.headers:
        domain = urlparse(referer_url).netloc
        if domain:
            session.headers['Referer'] = f"https://{domain}/"

    return session


class CancelToken:
    """
    取消令牌

    由协调器在首个致命错误时触发，或由调用方从外部触发。
    工作线程在网络调用前后、读取分块之间以及重试等待期间检查它。
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None):
        """触发取消"""
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise DownloadCancelled(self.reason or "任务已取消")

    def sleep(self, seconds: float):
        """可被取消打断的等待"""
        if self._event.wait(max(seconds, 0)):
            raise DownloadCancelled(self.reason or "任务已取消")


class RetryPolicy:
    """
    重试策略 - 支持固定间隔与指数退避
    """

    def __init__(self, max_attempts: int = 4, retry_delay: float = 1.0,
                 backoff: str = "exponential", backoff_factor: float = 2.0,
                 max_retry_delay: float = 30.0):
        """
        初始化重试策略

        Args:
            max_attempts: 最大尝试次数（含首次）
            retry_delay: 基础重试延迟(秒)
            backoff: 退避方式，fixed 或 exponential
            backoff_factor: 指数退避的倍数
            max_retry_delay: 单次等待上限(秒)
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts 必须大于 0: {max_attempts}")
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.backoff = backoff
        self.backoff_factor = backoff_factor
        self.max_retry_delay = max_retry_delay

    @classmethod
    def from_config(cls, config: DownloadConfig) -> 'RetryPolicy':
        return cls(
            max_attempts=config.max_attempts,
            retry_delay=config.retry_delay,
            backoff=config.backoff,
            backoff_factor=config.backoff_factor,
            max_retry_delay=config.max_retry_delay,
        )

    def get_delay(self, attempt: int) -> float:
        """第 attempt 次（从 1 开始）失败后的等待时间"""
        if self.backoff == BACKOFF_FIXED:
            delay = self.retry_delay
        else:
            delay = self.retry_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_retry_delay)

    def execute_with_retry(self, func: Callable, *args,
                           retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                           cancel_token: Optional[CancelToken] = None,
                           on_error: Optional[Callable[[int, BaseException], None]] = None,
                           **kwargs):
        """
        执行函数,失败时重试

        Args:
            func: 要执行的函数
            retry_on: 视为可重试的异常类型
            cancel_token: 取消令牌，每次尝试前与等待期间检查
            on_error: 每次失败后的回调 (attempt, exception)

        Returns:
            函数执行结果

        Raises:
            DownloadCancelled: 等待或尝试前检测到取消
            Exception: 重试失败后抛出最后一次的异常
        """
        last_exception = None

        for attempt in range(1, self.max_attempts + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                return func(*args, **kwargs)
            except DownloadCancelled:
                raise
            except retry_on as e:
                last_exception = e
                if on_error:
                    on_error(attempt, e)
                if attempt < self.max_attempts:
                    delay = self.get_delay(attempt)
                    if cancel_token is not None:
                        cancel_token.sleep(delay)
                    else:
                        time.sleep(delay)

        raise last_exception


def format_file_size(size: int) -> str:
    """格式化文件大小"""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} TB"


def format_time(seconds: float) -> str:
    """格式化时间"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds/60:.1f}m"
    else:
        return f"{seconds/3600:.1f}h"


def remove_file_quietly(path: str, logger: Optional[logging.Logger] = None):
    """删除文件，失败时仅记录警告"""
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        if logger:
            logger.warning(f"删除文件 {path} 失败: {e}")
