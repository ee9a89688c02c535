"""
重组任务模块
串联播放列表解析与下载协调，输出供外部转码使用的完整 TS 文件
"""

import os
import signal
import time
from typing import BinaryIO, Dict, Optional

import requests

from .config import DownloadConfig
from .coordinator import DownloadCoordinator
from .parser import Manifest, PlaylistResolver
from .utils import (
    CancelToken, create_session, format_file_size, format_time,
    remove_file_quietly, setup_logger
)


class ReassemblyJob:
    """
    HLS 重组任务主类

    每个实例持有自己的会话、密钥缓存与取消令牌，
    同一进程中的多个任务互不干扰。
    """

    def __init__(self, source: str, config: Optional[DownloadConfig] = None,
                 cancel_token: Optional[CancelToken] = None,
                 session: Optional[requests.Session] = None):
        """
        Args:
            source: 播放列表 URL 或本地路径
            config: 下载配置
            cancel_token: 外部取消令牌
            session: HTTP 会话，默认按配置创建
        """
        self.source = source
        self.config = config or DownloadConfig()
        self.cancel_token = cancel_token or CancelToken()
        self.session = session or create_session(
            self.config.verify_ssl, self.config.headers, referer_url=source)

        self.logger = None
        if self.config.enable_logging:
            self.logger = setup_logger('hls_reassembler', self.config.log_file)

        self.resolver = PlaylistResolver(self.session, self.config, self.cancel_token)
        self.coordinator = DownloadCoordinator(
            self.config, cancel_token=self.cancel_token, session=self.session)

        self.manifest: Optional[Manifest] = None
        self.download_info: Optional[Dict] = None
        self.is_downloading = False

    def _log(self, level: str, message: str):
        if self.logger:
            getattr(self.logger, level)(message)

    def resolve(self) -> Manifest:
        """解析播放列表（只解析一次）"""
        if self.manifest is None:
            self._log('info', f"开始处理 M3U8: {self.source}")
            self.manifest = self.resolver.resolve(self.source)
            self._log('info', f"找到 {len(self.manifest)} 个片段，"
                              f"起始序列号 {self.manifest.first_sequence}，"
                              f"{'已加密' if self.manifest.is_encrypted else '未加密'}")
        return self.manifest

    def run(self, output: BinaryIO) -> Manifest:
        """
        解析并下载，将重组后的字节流写入 output

        Returns:
            Manifest: 使用的片段清单
        """
        manifest = self.resolve()
        start = time.time()
        self.is_downloading = True
        try:
            sink = self.coordinator.run(manifest, output)
        finally:
            self.is_downloading = False

        elapsed = time.time() - start
        self.download_info = {
            'total_segments': len(manifest),
            'bytes_written': sink.bytes_written,
            'peak_buffered': sink.peak_buffered,
            'elapsed': elapsed,
            **manifest.to_dict(),
        }
        self._log('info', f"重组完成: {format_file_size(sink.bytes_written)}，耗时 {format_time(elapsed)}")
        return manifest

    def download(self, output_file: str) -> str:
        """
        下载到文件

        先写入 <output_file>.part，成功后重命名；失败时删除部分文件
        （config.keep_partial 为 True 时保留），并重新抛出异常。

        Returns:
            str: 输出文件路径
        """
        output_dir = os.path.dirname(os.path.abspath(output_file))
        os.makedirs(output_dir, exist_ok=True)
        partial_file = output_file + '.part'

        try:
            with open(partial_file, 'wb') as f:
                self.run(f)
        except Exception as e:
            self._log('error', f"下载过程出错: {e}")
            if self.config.keep_partial:
                self._log('warning', f"保留部分文件: {partial_file}")
            else:
                remove_file_quietly(partial_file, self.logger)
            raise

        os.replace(partial_file, output_file)
        self.download_info['output_file'] = output_file
        self._log('info', f"下载完成！文件保存为: {output_file}")
        return output_file

    def install_signal_handlers(self):
        """注册信号处理（仅主线程可调用）"""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """信号处理"""
        self._log('info', "收到中断信号，正在停止下载...")
        self.stop()

    def stop(self):
        """停止下载"""
        self.cancel_token.cancel("收到停止请求")

    def get_status(self) -> Dict:
        """获取下载状态"""
        if self.download_info:
            return self.download_info
        if self.is_downloading:
            return {'status': 'downloading'}
        return {'status': 'not_started'}
