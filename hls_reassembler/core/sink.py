"""
重组输出模块
接收以任意完成顺序到达的已解密片段，严格按序列号顺序写入输出流
"""

import logging
import threading
from enum import Enum
from typing import BinaryIO, Callable, Dict, Optional


class SinkState(Enum):
    """输出状态枚举"""
    WAITING = "waiting"     # 等待 next_expected 到达
    FLUSHING = "flushing"   # 正在写出连续片段
    DONE = "done"           # 所有片段已写出
    FAILED = "failed"       # 终止状态


class ReorderingSink:
    """
    顺序重组器

    以 next_expected 为唯一状态推进：片段到达后先放入重组缓冲区，
    若恰好是 next_expected，则连同其后已缓冲的连续片段一并写出。
    每次 submit 在同一把锁内完成，写出过程不可并行。
    """

    def __init__(self, output: BinaryIO, first_sequence: int, total: int,
                 on_flush: Optional[Callable[[int, int], None]] = None):
        """
        初始化重组器

        Args:
            output: 输出流（二进制可写）
            first_sequence: 清单中第一个片段的序列号
            total: 片段总数
            on_flush: 每写出一个片段后的回调 (sequence, nbytes)
        """
        if total < 0:
            raise ValueError(f"片段总数不能为负数: {total}")

        self.output = output
        self.first_sequence = first_sequence
        self.total = total
        self.on_flush = on_flush
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._buffer: Dict[int, bytes] = {}
        self._end = first_sequence + total

        self.next_expected = first_sequence
        self.state = SinkState.WAITING
        self.error: Optional[BaseException] = None
        self.peak_buffered = 0
        self.bytes_written = 0
        self.flushed_count = 0

        if total == 0:
            self.state = SinkState.DONE

    @property
    def buffered_count(self) -> int:
        with self._lock:
            return len(self._buffer)

    @property
    def is_done(self) -> bool:
        return self.state is SinkState.DONE

    def submit(self, sequence: int, data: bytes) -> bool:
        """
        提交一个已解密片段

        Args:
            sequence: 片段序列号
            data: 解密后的数据

        Returns:
            bool: 是否被接受（FAILED 之后提交的片段会被丢弃）

        Raises:
            ValueError: 序列号越界或重复提交
        """
        with self._lock:
            if self.state is SinkState.FAILED:
                return False

            if not self.first_sequence <= sequence < self._end:
                raise ValueError(
                    f"序列号 {sequence} 超出范围 [{self.first_sequence}, {self._end})")
            if sequence < self.next_expected or sequence in self._buffer:
                raise ValueError(f"片段 #{sequence} 重复提交")

            self._buffer[sequence] = data
            self.peak_buffered = max(self.peak_buffered, len(self._buffer))

            if sequence == self.next_expected:
                self._flush_locked()
            return True

    def _flush_locked(self):
        self.state = SinkState.FLUSHING
        try:
            while self.next_expected in self._buffer:
                sequence = self.next_expected
                chunk = self._buffer.pop(sequence)
                self.output.write(chunk)
                self.next_expected += 1
                self.bytes_written += len(chunk)
                self.flushed_count += 1
                if self.on_flush:
                    self.on_flush(sequence, len(chunk))
        except Exception as e:
            self.logger.error(f"写出片段 #{self.next_expected} 失败: {e}")
            self._fail_locked(e)
            raise

        if self.next_expected == self._end:
            self.state = SinkState.DONE
            self.output.flush()
        else:
            self.state = SinkState.WAITING

    def fail(self, error: BaseException):
        """
        标记失败：之后不再写出任何数据，已写出的前缀保留在输出中
        """
        with self._lock:
            if self.state in (SinkState.DONE, SinkState.FAILED):
                return
            self._fail_locked(error)

    def _fail_locked(self, error: BaseException):
        self.state = SinkState.FAILED
        self.error = error
        self._buffer.clear()
