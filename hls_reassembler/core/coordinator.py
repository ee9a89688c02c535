"""
下载协调模块
管理固定大小的工作线程池，串联 下载 → 密钥 → 解密 → 顺序写出，
任一片段最终失败时取消全部任务（fail-fast）
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import BinaryIO, List, Optional

import requests
from tqdm import tqdm

from .config import DownloadConfig
from .crypto import AESDecryptor, EncryptionKey, KeyResolver
from .errors import DownloadCancelled, ReassemblyError
from .fetcher import SegmentFetcher
from .parser import Manifest, SegmentDescriptor
from .sink import ReorderingSink
from .utils import CancelToken, create_session


@dataclass
class FetchedSegment:
    """已下载、尚未解密的片段，由产生它的工作线程持有"""
    sequence: int
    raw_bytes: bytes
    key: Optional[EncryptionKey] = None


class DownloadCoordinator:
    """下载协调器"""

    def __init__(self, config: Optional[DownloadConfig] = None,
                 fetcher: Optional[SegmentFetcher] = None,
                 key_resolver: Optional[KeyResolver] = None,
                 decryptor: Optional[AESDecryptor] = None,
                 cancel_token: Optional[CancelToken] = None,
                 session: Optional[requests.Session] = None):
        """
        初始化协调器

        Args:
            config: 下载配置
            fetcher: 片段下载器，默认按配置创建
            key_resolver: 密钥解析器，默认按配置创建
            decryptor: 解密器
            cancel_token: 取消令牌，同时用于外部取消与内部 fail-fast
            session: 默认组件共用的 HTTP 会话
        """
        self.config = config or DownloadConfig()
        self.cancel_token = cancel_token or CancelToken()
        self.logger = logging.getLogger(__name__)

        if fetcher is None or key_resolver is None:
            session = session or create_session(
                self.config.verify_ssl, self.config.headers)
        self.fetcher = fetcher or SegmentFetcher(
            session, self.config, cancel_token=self.cancel_token)
        self.key_resolver = key_resolver or KeyResolver(
            session, self.config, cancel_token=self.cancel_token)
        self.decryptor = decryptor or AESDecryptor()

        # 注入的组件与本协调器共用同一取消令牌
        for component in (self.fetcher, self.key_resolver):
            if component.cancel_token is None:
                component.cancel_token = self.cancel_token

        self._error: Optional[BaseException] = None
        self._error_lock = threading.Lock()
        self._futures: List[Future] = []

    def run(self, manifest: Manifest, output: BinaryIO) -> ReorderingSink:
        """
        执行整个下载流程

        Args:
            manifest: 片段清单
            output: 输出流

        Returns:
            ReorderingSink: 已进入 DONE 状态的重组器

        Raises:
            PlaylistError/KeyFetchError/SegmentFetchError/DecryptionError: 首个致命错误
            DownloadCancelled: 被外部取消
        """
        segments = manifest.segments
        concurrency = self.config.concurrency
        # 已派发但尚未写出的片段数不超过并发数
        slots = threading.Semaphore(concurrency)

        progress = None
        if self.config.show_progress:
            progress = tqdm(
                total=len(segments),
                desc="下载进度",
                ncols=80,
                leave=False,
                bar_format='{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt}'
            )

        def on_flush(sequence: int, nbytes: int):
            slots.release()
            if progress is not None:
                progress.update(1)

        sink = ReorderingSink(output, manifest.first_sequence, len(segments), on_flush)
        self._error = None
        self._futures = []

        self.logger.info(f"开始下载 {len(segments)} 个片段，并发数 {concurrency}")

        try:
            with ThreadPoolExecutor(max_workers=concurrency) as executor:
                for descriptor in segments:
                    if not self._acquire_slot(slots):
                        break
                    future = executor.submit(self._process, descriptor, sink)
                    with self._error_lock:
                        self._futures.append(future)
                    future.add_done_callback(
                        lambda f, d=descriptor: self._on_done(f, d, sink))

                if self.cancel_token.is_cancelled():
                    self._cancel_pending()
        finally:
            if progress is not None:
                progress.close()

        if self._error is not None:
            raise self._error

        if self.cancel_token.is_cancelled():
            reason = self.cancel_token.reason or "任务已取消"
            sink.fail(DownloadCancelled(reason))
            self.logger.warning(f"下载已停止: {reason}")
            raise DownloadCancelled(reason)

        if not sink.is_done:
            raise ReassemblyError(
                f"片段未全部写出: {sink.flushed_count}/{len(segments)}")

        self.logger.info(f"所有片段写出完成: {sink.flushed_count} 个, {sink.bytes_written} bytes")
        return sink

    def _acquire_slot(self, slots: threading.Semaphore) -> bool:
        """等待空闲槽位，期间响应取消"""
        while not self.cancel_token.is_cancelled():
            if slots.acquire(timeout=0.05):
                return True
        return False

    def _process(self, descriptor: SegmentDescriptor, sink: ReorderingSink):
        """单个片段：下载 → 密钥 → 解密 → 提交"""
        self.cancel_token.raise_if_cancelled()

        raw_bytes = self.fetcher.fetch(descriptor)
        key = None
        if descriptor.is_encrypted():
            key = self.key_resolver.resolve(descriptor.key.uri).with_iv(descriptor.key.iv)
        segment = FetchedSegment(descriptor.sequence, raw_bytes, key)

        plain = self.decryptor.decrypt(segment.raw_bytes, segment.key, segment.sequence)

        self.cancel_token.raise_if_cancelled()
        sink.submit(segment.sequence, plain)

    def _on_done(self, future: Future, descriptor: SegmentDescriptor, sink: ReorderingSink):
        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            return

        with self._error_lock:
            # 取消之后出现的异常都是取消的连带结果
            if self._error is not None or self.cancel_token.is_cancelled():
                return
            self._error = error
            self.cancel_token.cancel(f"片段 #{descriptor.sequence} 失败: {error}")

        self.logger.error(f"片段 #{descriptor.sequence} 失败，取消剩余任务: {error}")
        sink.fail(error)
        self._cancel_pending()

    def _cancel_pending(self):
        with self._error_lock:
            futures = list(self._futures)
        for future in futures:
            future.cancel()

    def stop(self):
        """停止下载"""
        self.cancel_token.cancel("收到停止请求")
