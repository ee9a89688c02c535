"""
HLS Reassembler Core Module
核心重组功能模块
"""

from .config import DownloadConfig, ConfigTemplates
from .errors import (
    ReassemblyError,
    PlaylistError,
    KeyFetchError,
    SegmentFetchError,
    DecryptionError,
    DownloadCancelled
)
from .crypto import (
    EncryptionMethod,
    EncryptionKey,
    KeyReference,
    KeyResolver,
    AESDecryptor,
    generate_iv_from_sequence,
    parse_iv_string
)
from .parser import (
    PlaylistResolver,
    PlaylistVariant,
    SegmentDescriptor,
    Manifest,
    parse_playlist,
    select_variant
)
from .fetcher import SegmentFetcher
from .sink import ReorderingSink, SinkState
from .coordinator import DownloadCoordinator, FetchedSegment
from .downloader import ReassemblyJob
from .utils import (
    CancelToken,
    RetryPolicy,
    setup_logger,
    create_session,
    format_file_size,
    format_time
)

__all__ = [
    # 配置
    "DownloadConfig",
    "ConfigTemplates",

    # 异常
    "ReassemblyError",
    "PlaylistError",
    "KeyFetchError",
    "SegmentFetchError",
    "DecryptionError",
    "DownloadCancelled",

    # 加密支持
    "EncryptionMethod",
    "EncryptionKey",
    "KeyReference",
    "KeyResolver",
    "AESDecryptor",
    "generate_iv_from_sequence",
    "parse_iv_string",

    # 播放列表
    "PlaylistResolver",
    "PlaylistVariant",
    "SegmentDescriptor",
    "Manifest",
    "parse_playlist",
    "select_variant",

    # 下载与重组
    "SegmentFetcher",
    "ReorderingSink",
    "SinkState",
    "DownloadCoordinator",
    "FetchedSegment",
    "ReassemblyJob",

    # 工具函数
    "CancelToken",
    "RetryPolicy",
    "setup_logger",
    "create_session",
    "format_file_size",
    "format_time"
]
