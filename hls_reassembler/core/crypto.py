"""
加密解密模块
支持 AES-128-CBC 加密的 HLS 片段解密，以及按 URI 单次获取的密钥缓存
"""

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

import requests
from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad

from .config import DownloadConfig
from .errors import DecryptionError, DownloadCancelled, KeyFetchError
from .utils import CancelToken, create_session, is_remote


KEY_SIZE = 16


class EncryptionMethod(Enum):
    """加密方法枚举"""
    NONE = "NONE"
    AES_128_CBC = "AES-128"

    @classmethod
    def from_tag(cls, value: str) -> 'EncryptionMethod':
        """从 #EXT-X-KEY 的 METHOD 属性解析"""
        for method in cls:
            if method.value == value:
                return method
        raise ValueError(f"不支持的加密方法: {value}")


@dataclass(frozen=True)
class KeyReference:
    """片段生效的 #EXT-X-KEY 信息"""
    method: EncryptionMethod
    uri: Optional[str] = None
    iv: Optional[bytes] = None

    def is_encrypted(self) -> bool:
        return self.method is not EncryptionMethod.NONE


@dataclass(frozen=True)
class EncryptionKey:
    """已解析的密钥"""
    uri: str
    method: EncryptionMethod
    key_bytes: bytes
    explicit_iv: Optional[bytes] = None

    def with_iv(self, iv: Optional[bytes]) -> 'EncryptionKey':
        """返回附带片段显式 IV 的副本"""
        if iv == self.explicit_iv:
            return self
        return replace(self, explicit_iv=iv)


def generate_iv_from_sequence(sequence_number: int) -> bytes:
    """
    根据序列号生成 IV

    HLS 规范：如果没有显式 IV，使用媒体序列号作为 IV

    Args:
        sequence_number: 媒体片段序列号

    Returns:
        bytes: 16 字节 IV
    """
    # 序列号转为 16 字节大端整数
    return sequence_number.to_bytes(16, byteorder='big')


def parse_iv_string(iv_string: str) -> bytes:
    """
    解析 IV 字符串

    Args:
        iv_string: 十六进制 IV 字符串，如 "0x12345678..."

    Returns:
        bytes: 16 字节 IV

    Raises:
        ValueError: 不是合法的 128 位十六进制数
    """
    if iv_string.startswith('0x') or iv_string.startswith('0X'):
        iv_string = iv_string[2:]

    if not iv_string or len(iv_string) > 32:
        raise ValueError(f"IV 长度不合法: {iv_string!r}")

    # 确保是 32 个十六进制字符（16 字节）
    return bytes.fromhex(iv_string.zfill(32))


class _KeyCell:
    """单个 URI 的缓存单元：进行中（带等待者）或已完成（结果/错误）"""

    def __init__(self):
        self.ready = threading.Event()
        self.key: Optional[EncryptionKey] = None
        self.error: Optional[Exception] = None


class KeyResolver:
    """
    密钥解析器

    负责下载并缓存本次任务的解密密钥。同一 URI 只获取一次：
    首个请求者负责下载，并发的其他请求者等待同一结果。
    """

    def __init__(self, session: Optional[requests.Session] = None,
                 config: Optional[DownloadConfig] = None,
                 cancel_token: Optional[CancelToken] = None):
        self.config = config or DownloadConfig()
        self.session = session or create_session(
            self.config.verify_ssl, self.config.headers)
        self.cancel_token = cancel_token
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._cells: Dict[str, _KeyCell] = {}
        self.fetch_count = 0

    def resolve(self, uri: str) -> EncryptionKey:
        """
        获取密钥（带单次获取缓存）

        Args:
            uri: 密钥 URI（绝对地址或本地路径）

        Returns:
            EncryptionKey: AES-128 密钥

        Raises:
            KeyFetchError: 密钥无法获取或长度不是 16 字节
        """
        with self._lock:
            cell = self._cells.get(uri)
            owner = cell is None
            if owner:
                cell = _KeyCell()
                self._cells[uri] = cell

        if owner:
            try:
                cell.key = EncryptionKey(
                    uri=uri,
                    method=EncryptionMethod.AES_128_CBC,
                    key_bytes=self._fetch(uri),
                )
            except (KeyFetchError, DownloadCancelled) as e:
                cell.error = e
            except Exception as e:
                cell.error = KeyFetchError(uri, e)
            finally:
                cell.ready.set()
        else:
            self._wait(cell)

        if cell.error is not None:
            raise cell.error
        return cell.key

    def _wait(self, cell: _KeyCell):
        """等待其他线程完成获取，期间响应取消"""
        while not cell.ready.wait(0.05):
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled()

    def _fetch(self, uri: str) -> bytes:
        """从网络或本地文件读取密钥"""
        with self._lock:
            self.fetch_count += 1

        if is_remote(uri):
            if self.cancel_token is not None and self.cancel_token.is_cancelled():
                raise DownloadCancelled("任务已取消")
            response = self.session.get(
                uri, timeout=(self.config.connect_timeout, self.config.read_timeout))
            try:
                response.raise_for_status()
                key_data = response.content
            finally:
                response.close()
        else:
            with open(uri, 'rb') as f:
                key_data = f.read()

        # 验证密钥长度（AES-128 需要 16 字节）
        if len(key_data) != KEY_SIZE:
            raise KeyFetchError(
                uri, message=f"密钥长度异常: {len(key_data)} bytes (期望 {KEY_SIZE} bytes): {uri}")

        self.logger.info(f"成功获取密钥: {uri[:80]}")
        return key_data


class AESDecryptor:
    """
    AES-128-CBC 解密器

    用于解密 HLS 加密的 TS 片段
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def decrypt(self, encrypted_data: bytes, key: Optional[EncryptionKey], sequence_number: int) -> bytes:
        """
        解密数据

        Args:
            encrypted_data: 加密的数据
            key: 密钥，为 None 或 METHOD=NONE 时原样返回
            sequence_number: 片段序列号（没有显式 IV 时用于生成 IV）

        Returns:
            bytes: 解密后的数据

        Raises:
            DecryptionError: 长度未按块对齐或填充无效
        """
        if key is None or key.method is EncryptionMethod.NONE:
            return encrypted_data

        if not encrypted_data or len(encrypted_data) % AES.block_size != 0:
            raise DecryptionError(
                sequence_number,
                f"数据长度 {len(encrypted_data)} 不是 {AES.block_size} 的整数倍")

        iv = key.explicit_iv
        if iv is None:
            try:
                iv = generate_iv_from_sequence(sequence_number)
            except OverflowError:
                raise DecryptionError(
                    sequence_number, "序列号无法表示为 128 位 IV")

        cipher = AES.new(key.key_bytes, AES.MODE_CBC, iv)
        decrypted_data = cipher.decrypt(encrypted_data)

        # 移除 PKCS7 填充
        try:
            return unpad(decrypted_data, AES.block_size)
        except ValueError as e:
            raise DecryptionError(sequence_number, f"PKCS#7 填充无效 ({e})") from e
