"""
M3U8解析器模块
负责获取并解析播放列表：主播放列表按策略选出最佳变体并递归解析，
媒体播放列表解析为按序列号排列的片段清单
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import urljoin, urlparse

import requests

from .config import DownloadConfig
from .crypto import EncryptionMethod, KeyReference, parse_iv_string
from .errors import PlaylistError
from .utils import CancelToken, create_session, is_remote


MAX_PLAYLIST_DEPTH = 5

_ATTRIBUTE_PATTERN = re.compile(r'([A-Z0-9-]+)=("[^"]*"|[^,]*)')

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaylistVariant:
    """主播放列表中的一个变体流"""
    url: str
    bandwidth: int
    resolution: Optional[Tuple[int, int]] = None
    codecs: Optional[str] = None

    @property
    def area(self) -> int:
        if not self.resolution:
            return 0
        return self.resolution[0] * self.resolution[1]


@dataclass(frozen=True)
class SegmentDescriptor:
    """媒体片段描述"""
    sequence: int
    url: str
    duration: float = 0.0
    byte_range: Optional[Tuple[int, int]] = None  # (offset, length)
    key: Optional[KeyReference] = None

    @property
    def key_uri(self) -> Optional[str]:
        return self.key.uri if self.key else None

    def is_encrypted(self) -> bool:
        return self.key is not None and self.key.is_encrypted()


@dataclass
class MasterPlaylist:
    url: str
    variants: List[PlaylistVariant] = field(default_factory=list)


@dataclass
class MediaPlaylist:
    url: str
    segments: List[SegmentDescriptor] = field(default_factory=list)
    media_sequence: int = 0
    target_duration: Optional[float] = None
    is_endlist: bool = False


@dataclass
class Manifest:
    """解析完成的片段清单"""
    source: str
    playlist_url: str
    base_url: str
    segments: List[SegmentDescriptor]
    variant: Optional[PlaylistVariant] = None

    @property
    def first_sequence(self) -> int:
        return self.segments[0].sequence if self.segments else 0

    @property
    def last_sequence(self) -> int:
        return self.segments[-1].sequence if self.segments else -1

    @property
    def total_duration(self) -> float:
        return sum(segment.duration for segment in self.segments)

    @property
    def is_encrypted(self) -> bool:
        return any(segment.is_encrypted() for segment in self.segments)

    def __len__(self):
        return len(self.segments)

    def to_dict(self) -> Dict:
        """转换为字典"""
        return {
            'source': self.source,
            'playlist_url': self.playlist_url,
            'base_url': self.base_url,
            'total_segments': len(self.segments),
            'first_sequence': self.first_sequence,
            'last_sequence': self.last_sequence,
            'total_duration': self.total_duration,
            'is_encrypted': self.is_encrypted,
            'bandwidth': self.variant.bandwidth if self.variant else None,
            'resolution': 'x'.join(map(str, self.variant.resolution))
            if self.variant and self.variant.resolution else None,
        }


def parse_attribute_list(text: str) -> Dict[str, str]:
    """
    解析标签属性列表

    格式示例: BANDWIDTH=1280000,RESOLUTION=1280x720,CODECS="avc1.4d401f,mp4a.40.2"
    """
    attributes = {}
    for match in _ATTRIBUTE_PATTERN.finditer(text):
        value = match.group(2).strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1]
        attributes[match.group(1)] = value
    return attributes


def parse_resolution(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """解析 1280x720 形式的分辨率"""
    if not value:
        return None
    match = re.fullmatch(r'(\d+)[xX](\d+)', value.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def resolve_uri(base: str, uri: str) -> str:
    """
    将播放列表中的 URI 解析为绝对地址

    Args:
        base: 当前播放列表的地址（URL 或本地路径）
        uri: 播放列表中出现的 URI

    Returns:
        str: 绝对 URL 或本地路径
    """
    if is_remote(uri):
        return uri
    if is_remote(base):
        return urljoin(base, uri)
    if os.path.isabs(uri):
        return uri
    return os.path.normpath(os.path.join(os.path.dirname(base), uri))


def extract_base_url(url: str) -> str:
    """提取基础URL（播放列表所在目录）"""
    if is_remote(url):
        path = urlparse(url)._replace(query='', fragment='').geturl()
        return path.rsplit('/', 1)[0] + '/'
    return os.path.dirname(os.path.abspath(url)) + os.sep


def select_variant(variants: List[PlaylistVariant]) -> PlaylistVariant:
    """
    选择最佳变体

    策略：带宽最高；带宽相同选分辨率面积更大的；仍相同则取靠前的
    """
    if not variants:
        raise PlaylistError("主播放列表中未找到可用变体流")

    best = variants[0]
    for variant in variants[1:]:
        if (variant.bandwidth, variant.area) > (best.bandwidth, best.area):
            best = variant
    return best


def parse_playlist(content: str, url: str) -> Union[MasterPlaylist, MediaPlaylist]:
    """
    解析播放列表文本

    Args:
        content: 播放列表内容
        url: 播放列表地址，用于解析相对 URI

    Returns:
        MasterPlaylist 或 MediaPlaylist

    Raises:
        PlaylistError: 内容不是可识别的播放列表
    """
    lines = [line.strip() for line in content.lstrip('\ufeff').splitlines()]
    lines = [line for line in lines if line]

    if not lines or not lines[0].startswith('#EXTM3U'):
        raise PlaylistError(f"不是有效的 M3U8 文件（缺少 #EXTM3U）: {url}")

    if any(line.startswith('#EXT-X-STREAM-INF') for line in lines):
        return _parse_master(lines, url)
    if any(line.startswith(('#EXTINF', '#EXT-X-TARGETDURATION')) for line in lines):
        return _parse_media(lines, url)

    raise PlaylistError(f"无法识别的播放列表类型: {url}")


def _parse_master(lines: List[str], url: str) -> MasterPlaylist:
    playlist = MasterPlaylist(url=url)
    pending: Optional[Dict[str, str]] = None

    for line in lines[1:]:
        if line.startswith('#EXT-X-STREAM-INF:'):
            pending = parse_attribute_list(line.split(':', 1)[1])
        elif line.startswith('#'):
            continue
        elif pending is not None:
            try:
                bandwidth = int(pending.get('BANDWIDTH', '0'))
            except ValueError:
                raise PlaylistError(f"BANDWIDTH 属性无效: {pending.get('BANDWIDTH')}")
            playlist.variants.append(PlaylistVariant(
                url=resolve_uri(url, line),
                bandwidth=bandwidth,
                resolution=parse_resolution(pending.get('RESOLUTION')),
                codecs=pending.get('CODECS'),
            ))
            pending = None

    if pending is not None:
        raise PlaylistError(f"#EXT-X-STREAM-INF 后缺少变体 URI: {url}")

    return playlist


def _parse_key(attributes: Dict[str, str], url: str) -> Optional[KeyReference]:
    """
    解析 #EXT-X-KEY 标签

    格式示例:
    #EXT-X-KEY:METHOD=AES-128,URI="https://example.com/key.key",IV=0x12345678...
    """
    try:
        method = EncryptionMethod.from_tag(attributes.get('METHOD', 'NONE'))
    except ValueError as e:
        raise PlaylistError(str(e))

    if method is EncryptionMethod.NONE:
        return None

    key_format = attributes.get('KEYFORMAT', 'identity')
    if key_format != 'identity':
        raise PlaylistError(f"不支持的 KEYFORMAT: {key_format}")

    uri = attributes.get('URI')
    if not uri:
        raise PlaylistError(f"METHOD={method.value} 的密钥缺少 URI: {url}")

    iv = None
    if attributes.get('IV'):
        try:
            iv = parse_iv_string(attributes['IV'])
        except ValueError as e:
            raise PlaylistError(f"IV 无效: {attributes['IV']} - {e}")

    return KeyReference(method=method, uri=resolve_uri(url, uri), iv=iv)


def _parse_byte_range(value: str) -> Tuple[int, Optional[int]]:
    """解析 #EXT-X-BYTERANGE:<n>[@<o>]，返回 (length, offset)"""
    length, _, offset = value.partition('@')
    try:
        return int(length), int(offset) if offset else None
    except ValueError:
        raise PlaylistError(f"#EXT-X-BYTERANGE 无效: {value}")


def _parse_media(lines: List[str], url: str) -> MediaPlaylist:
    playlist = MediaPlaylist(url=url)
    sequence: Optional[int] = None
    duration = 0.0
    pending_range: Optional[Tuple[int, Optional[int]]] = None
    current_key: Optional[KeyReference] = None
    previous_url: Optional[str] = None
    previous_end = 0
    map_warned = False

    for line in lines[1:]:
        if line.startswith('#EXT-X-MEDIA-SEQUENCE:'):
            try:
                playlist.media_sequence = int(line.split(':', 1)[1])
            except ValueError:
                raise PlaylistError(f"#EXT-X-MEDIA-SEQUENCE 无效: {line}")
            if playlist.media_sequence < 0:
                raise PlaylistError(f"#EXT-X-MEDIA-SEQUENCE 不能为负数: {line}")
        elif line.startswith('#EXT-X-TARGETDURATION:'):
            try:
                playlist.target_duration = float(line.split(':', 1)[1])
            except ValueError:
                raise PlaylistError(f"#EXT-X-TARGETDURATION 无效: {line}")
        elif line.startswith('#EXTINF:'):
            try:
                duration = float(line.split(':', 1)[1].split(',', 1)[0])
            except ValueError:
                raise PlaylistError(f"#EXTINF 无效: {line}")
        elif line.startswith('#EXT-X-BYTERANGE:'):
            pending_range = _parse_byte_range(line.split(':', 1)[1].strip())
        elif line.startswith('#EXT-X-KEY:'):
            current_key = _parse_key(parse_attribute_list(line.split(':', 1)[1]), url)
        elif line.startswith('#EXT-X-MAP'):
            if not map_warned:
                logger.warning(f"忽略不支持的 #EXT-X-MAP 初始化片段: {url}")
                map_warned = True
        elif line.startswith('#EXT-X-ENDLIST'):
            playlist.is_endlist = True
        elif line.startswith('#'):
            continue
        else:
            if sequence is None:
                sequence = playlist.media_sequence
            segment_url = resolve_uri(url, line)

            byte_range = None
            if pending_range is not None:
                length, offset = pending_range
                if offset is None:
                    if previous_url != segment_url:
                        raise PlaylistError(f"#EXT-X-BYTERANGE 缺少偏移量: {line}")
                    offset = previous_end
                byte_range = (offset, length)
                previous_end = offset + length
            previous_url = segment_url

            playlist.segments.append(SegmentDescriptor(
                sequence=sequence,
                url=segment_url,
                duration=duration,
                byte_range=byte_range,
                key=current_key,
            ))
            sequence += 1
            duration = 0.0
            pending_range = None

    return playlist


class PlaylistResolver:
    """播放列表解析器：获取、解析并递归解析到单一媒体播放列表"""

    def __init__(self, session: Optional[requests.Session] = None,
                 config: Optional[DownloadConfig] = None,
                 cancel_token: Optional[CancelToken] = None):
        self.config = config or DownloadConfig()
        self.session = session or create_session(
            self.config.verify_ssl, self.config.headers)
        self.cancel_token = cancel_token

    def fetch_text(self, source: str) -> Tuple[str, str]:
        """
        获取播放列表内容

        Returns:
            Tuple[str, str]: (内容, 最终地址)，最终地址已跟随 HTTP 重定向
        """
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

        if not is_remote(source):
            try:
                with open(source, 'rb') as f:
                    return f.read().decode('utf-8', errors='replace'), source
            except OSError as e:
                raise PlaylistError(f"无法读取文件: {source} - {e}") from e

        try:
            response = self.session.get(
                source, timeout=(self.config.connect_timeout, self.config.read_timeout))
            try:
                response.raise_for_status()
                content = response.content
                final_url = response.url or source
            finally:
                response.close()
        except requests.RequestException as e:
            raise PlaylistError(f"下载播放列表失败: {source} - {e}") from e

        return content.decode('utf-8', errors='replace'), final_url

    def resolve(self, source: str) -> Manifest:
        """
        将播放列表解析为片段清单

        Args:
            source: 播放列表 URL 或本地路径

        Returns:
            Manifest: 片段清单

        Raises:
            PlaylistError: 播放列表或所选变体无法获取/解析
        """
        return self._resolve(source, source, None, 0)

    def _resolve(self, source: str, location: str,
                 variant: Optional[PlaylistVariant], depth: int) -> Manifest:
        if depth > MAX_PLAYLIST_DEPTH:
            raise PlaylistError(f"主播放列表嵌套层数超过 {MAX_PLAYLIST_DEPTH}: {location}")

        content, url = self.fetch_text(location)
        playlist = parse_playlist(content, url)

        if isinstance(playlist, MasterPlaylist):
            logger.info(f"检测到 Master Playlist，共 {len(playlist.variants)} 个变体流")
            best = select_variant(playlist.variants)
            logger.info(
                f"选择最佳流: 带宽 {best.bandwidth}, 分辨率 "
                f"{'x'.join(map(str, best.resolution)) if best.resolution else 'N/A'}")
            try:
                return self._resolve(source, best.url, best, depth + 1)
            except PlaylistError as e:
                raise PlaylistError(f"变体播放列表解析失败: {best.url} - {e}") from e

        if not playlist.segments:
            raise PlaylistError(f"媒体播放列表中未找到任何片段: {url}")
        if not playlist.is_endlist:
            logger.warning(f"播放列表缺少 #EXT-X-ENDLIST，按当前快照下载: {url}")

        logger.info(f"检测到 Media Playlist，共 {len(playlist.segments)} 个切片")
        return Manifest(
            source=source,
            playlist_url=url,
            base_url=extract_base_url(url),
            segments=playlist.segments,
            variant=variant,
        )
