"""
配置模块
定义重组任务的各种配置参数
"""

import multiprocessing
from dataclasses import dataclass, field
from typing import Optional, Dict


BACKOFF_FIXED = "fixed"
BACKOFF_EXPONENTIAL = "exponential"


@dataclass
class DownloadConfig:
    """下载配置类"""

    # 并发配置（工作线程数，同时也是重组缓冲区的上限）
    concurrency: int = 8

    # 超时配置
    connect_timeout: int = 10
    read_timeout: int = 30

    # 重试配置：max_retries 为首次失败后的额外尝试次数
    max_retries: int = 3
    retry_delay: float = 1.0  # 秒
    backoff: str = BACKOFF_EXPONENTIAL
    backoff_factor: float = 2.0
    max_retry_delay: float = 30.0

    # 下载配置
    chunk_size: int = 8192  # 下载块大小

    # 请求头配置
    headers: Dict[str, str] = field(default_factory=lambda: {
        'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
        'Accept': '*/*',
        'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
    })

    # 其他配置
    verify_ssl: bool = False
    show_progress: bool = True
    enable_logging: bool = True
    log_file: Optional[str] = None

    # 失败时是否保留已写出的部分文件
    keep_partial: bool = False

    def __post_init__(self):
        """初始化后校验"""
        if not isinstance(self.concurrency, int) or self.concurrency < 1:
            raise ValueError(f"concurrency 必须为正整数: {self.concurrency}")
        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            raise ValueError(f"max_retries 必须为非负整数: {self.max_retries}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay 不能为负数: {self.retry_delay}")
        if self.backoff not in (BACKOFF_FIXED, BACKOFF_EXPONENTIAL):
            raise ValueError(f"未知的退避策略: {self.backoff}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size 必须为正整数: {self.chunk_size}")

    @property
    def max_attempts(self) -> int:
        """单个片段的最大尝试次数"""
        return self.max_retries + 1

    def to_dict(self):
        """转换为字典"""
        return {
            'concurrency': self.concurrency,
            'connect_timeout': self.connect_timeout,
            'read_timeout': self.read_timeout,
            'max_retries': self.max_retries,
            'retry_delay': self.retry_delay,
            'backoff': self.backoff,
            'backoff_factor': self.backoff_factor,
            'max_retry_delay': self.max_retry_delay,
            'chunk_size': self.chunk_size,
            'headers': self.headers,
            'verify_ssl': self.verify_ssl,
            'show_progress': self.show_progress,
            'enable_logging': self.enable_logging,
            'log_file': self.log_file,
            'keep_partial': self.keep_partial,
        }


# 预设配置模板
class ConfigTemplates:
    """配置模板"""

    @staticmethod
    def fast():
        """快速下载配置"""
        return DownloadConfig(
            concurrency=multiprocessing.cpu_count() * 4,
            max_retries=1,
            retry_delay=0.5,
            backoff=BACKOFF_FIXED,
            connect_timeout=5,
            read_timeout=15,
        )

    @staticmethod
    def stable():
        """稳定下载配置"""
        return DownloadConfig(
            concurrency=multiprocessing.cpu_count(),
            max_retries=5,
            retry_delay=2.0,
            connect_timeout=15,
            read_timeout=60,
        )

    @staticmethod
    def low_bandwidth():
        """低带宽配置"""
        return DownloadConfig(
            concurrency=2,
            max_retries=3,
            retry_delay=3.0,
            chunk_size=4096,
        )
