"""
HLS Reassembler Package
HLS 片段重组器：解析播放列表，并发下载、解密片段，并按原始顺序拼接为单一字节流
"""

from .core.config import DownloadConfig, ConfigTemplates
from .core.downloader import ReassemblyJob
from .core.coordinator import DownloadCoordinator
from .core.parser import PlaylistResolver, Manifest
from .core.errors import (
    ReassemblyError,
    PlaylistError,
    KeyFetchError,
    SegmentFetchError,
    DecryptionError,
    DownloadCancelled
)
from .core.utils import CancelToken

__version__ = "1.0.0"
__all__ = [
    "ReassemblyJob",
    "DownloadCoordinator",
    "PlaylistResolver",
    "Manifest",
    "DownloadConfig",
    "ConfigTemplates",
    "CancelToken",

    "ReassemblyError",
    "PlaylistError",
    "KeyFetchError",
    "SegmentFetchError",
    "DecryptionError",
    "DownloadCancelled"
]
