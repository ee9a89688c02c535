"""
片段下载模块
负责单个片段的网络获取（支持字节范围请求），失败时按重试策略退避重试
"""

import logging
import re
from typing import Dict, Optional, Tuple

import requests

from .config import DownloadConfig
from .errors import DownloadCancelled, SegmentFetchError
from .parser import SegmentDescriptor
from .utils import CancelToken, RetryPolicy, create_session, is_remote


_CONTENT_RANGE_PATTERN = re.compile(r"bytes\s+(\d+)-(\d+)/(?:\d+|\*)")


def parse_content_range(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """解析 Content-Range 响应头，返回 (起始, 结束)，无法识别时返回 None"""
    if not value:
        return None
    match = _CONTENT_RANGE_PATTERN.match(value.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


class IncompleteSegmentError(Exception):
    """响应体长度与声明长度或请求范围不一致"""


class SegmentFetcher:
    """片段下载器"""

    def __init__(self, session: Optional[requests.Session] = None,
                 config: Optional[DownloadConfig] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 cancel_token: Optional[CancelToken] = None):
        self.config = config or DownloadConfig()
        self.session = session or create_session(
            self.config.verify_ssl, self.config.headers)
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.cancel_token = cancel_token
        self.logger = logging.getLogger(__name__)

    def fetch(self, descriptor: SegmentDescriptor) -> bytes:
        """
        下载单个片段

        Args:
            descriptor: 片段描述

        Returns:
            bytes: 片段原始数据（未解密）

        Raises:
            SegmentFetchError: 用尽重试次数后仍失败
            DownloadCancelled: 任务已取消
        """
        def _on_error(attempt: int, error: BaseException):
            self.logger.warning(
                f"片段 #{descriptor.sequence} 第{attempt}/{self.retry_policy.max_attempts}次尝试失败: "
                f"{descriptor.url} - {error}")

        try:
            return self.retry_policy.execute_with_retry(
                self._fetch_once,
                descriptor,
                retry_on=(requests.RequestException, IncompleteSegmentError, OSError),
                cancel_token=self.cancel_token,
                on_error=_on_error,
            )
        except DownloadCancelled:
            raise
        except (requests.RequestException, IncompleteSegmentError, OSError) as e:
            raise SegmentFetchError(
                descriptor.sequence, descriptor.url, e,
                attempts=self.retry_policy.max_attempts) from e

    def _check_cancel(self):
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

    def _fetch_once(self, descriptor: SegmentDescriptor) -> bytes:
        self._check_cancel()
        if is_remote(descriptor.url):
            data = self._fetch_remote(descriptor)
        else:
            data = self._read_local(descriptor)
        self._check_cancel()
        return data

    def _fetch_remote(self, descriptor: SegmentDescriptor) -> bytes:
        headers: Dict[str, str] = {}
        if descriptor.byte_range:
            offset, length = descriptor.byte_range
            headers['Range'] = f"bytes={offset}-{offset + length - 1}"

        response = self.session.get(
            descriptor.url,
            headers=headers or None,
            timeout=(self.config.connect_timeout, self.config.read_timeout),
            stream=True,
        )
        try:
            response.raise_for_status()

            # 分块读取，块之间检查取消
            chunks = []
            for chunk in response.iter_content(chunk_size=self.config.chunk_size):
                self._check_cancel()
                if chunk:
                    chunks.append(chunk)
            data = b''.join(chunks)

            declared = response.headers.get('Content-Length')
            if (declared and declared.isdigit() and not response.headers.get('Content-Encoding')
                    and len(data) < int(declared)):
                raise IncompleteSegmentError(
                    f"响应被截断: 收到 {len(data)} bytes, 声明 {declared} bytes")

            status_code = response.status_code
            content_range = parse_content_range(response.headers.get('Content-Range'))
        finally:
            response.close()

        if descriptor.byte_range:
            offset, length = descriptor.byte_range
            # 服务器忽略 Range 返回整个资源时截取所需范围
            if status_code == 200 and len(data) >= offset + length:
                data = data[offset:offset + length]
            if status_code == 206 and content_range is not None \
                    and content_range != (offset, offset + length - 1):
                raise IncompleteSegmentError(
                    f"Content-Range 不符: 收到 bytes {content_range[0]}-{content_range[1]}, "
                    f"期望 bytes {offset}-{offset + length - 1}")
            if len(data) != length:
                raise IncompleteSegmentError(
                    f"字节范围长度不符: 收到 {len(data)} bytes, 期望 {length} bytes")

        return data

    def _read_local(self, descriptor: SegmentDescriptor) -> bytes:
        with open(descriptor.url, 'rb') as f:
            if not descriptor.byte_range:
                return f.read()
            offset, length = descriptor.byte_range
            f.seek(offset)
            data = f.read(length)

        if len(data) != length:
            raise IncompleteSegmentError(
                f"字节范围长度不符: 读取 {len(data)} bytes, 期望 {length} bytes")
        return data
