"""
异常模块
定义播放列表解析、密钥获取、片段下载与解密各阶段的错误类型
"""

from typing import Optional


class ReassemblyError(Exception):
    """重组任务的基础异常"""


class PlaylistError(ReassemblyError):
    """播放列表无法获取或无法解析"""


class KeyFetchError(ReassemblyError):
    """解密密钥无法获取或长度不正确"""

    def __init__(self, uri: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.uri = uri
        self.cause = cause
        if message is None:
            message = f"密钥获取失败: {uri}"
            if cause is not None:
                message += f" - {cause}"
        super().__init__(message)


class SegmentFetchError(ReassemblyError):
    """片段在用尽所有重试后仍下载失败"""

    def __init__(self, sequence: int, url: str, last_cause: Optional[BaseException] = None, attempts: int = 0):
        self.sequence = sequence
        self.url = url
        self.last_cause = last_cause
        self.attempts = attempts
        super().__init__(
            f"片段 #{sequence} 重试 {attempts} 次后仍无法下载: {url} - {last_cause}")


class DecryptionError(ReassemblyError):
    """片段解密失败（填充错误或长度未按块对齐）"""

    def __init__(self, sequence: int, reason: str):
        self.sequence = sequence
        self.reason = reason
        super().__init__(f"片段 #{sequence} 解密失败: {reason}")


class DownloadCancelled(ReassemblyError):
    """任务被取消"""
