"""
顺序重组测试
"""

import io
import itertools

import pytest

from hls_reassembler.core.sink import ReorderingSink, SinkState


def payload(sequence):
    return f"<{sequence}>".encode()


@pytest.mark.parametrize("order", list(itertools.permutations(range(10, 15))))
def test_any_completion_order_produces_sequence_order(order):
    output = io.BytesIO()
    sink = ReorderingSink(output, first_sequence=10, total=5)

    for sequence in order:
        assert sink.submit(sequence, payload(sequence))

    assert sink.state is SinkState.DONE
    assert output.getvalue() == b''.join(payload(s) for s in range(10, 15))
    assert sink.flushed_count == 5
    assert sink.buffered_count == 0


def test_state_transitions_and_flush_callback():
    output = io.BytesIO()
    flushed = []
    sink = ReorderingSink(output, 0, 4, on_flush=lambda seq, n: flushed.append((seq, n)))

    assert sink.state is SinkState.WAITING
    sink.submit(2, b'cc')
    sink.submit(1, b'b')
    assert sink.state is SinkState.WAITING
    assert output.getvalue() == b''
    assert sink.buffered_count == 2
    assert sink.next_expected == 0

    sink.submit(0, b'aaa')
    assert output.getvalue() == b'aaabcc'
    assert sink.next_expected == 3
    assert flushed == [(0, 3), (1, 1), (2, 2)]
    assert sink.state is SinkState.WAITING

    sink.submit(3, b'')
    assert sink.is_done
    assert sink.bytes_written == 6
    assert sink.peak_buffered == 3


def test_failed_sink_discards_later_segments():
    output = io.BytesIO()
    sink = ReorderingSink(output, 0, 3)
    sink.submit(0, b'a')
    sink.submit(2, b'c')

    error = RuntimeError("boom")
    sink.fail(error)
    assert sink.state is SinkState.FAILED
    assert sink.error is error
    assert sink.buffered_count == 0

    assert sink.submit(1, b'b') is False
    assert output.getvalue() == b'a'


def test_fail_after_done_is_ignored():
    sink = ReorderingSink(io.BytesIO(), 0, 1)
    sink.submit(0, b'a')
    sink.fail(RuntimeError("late"))
    assert sink.is_done
    assert sink.error is None


@pytest.mark.parametrize("sequence", [4, 8, 100])
def test_out_of_range_sequence_rejected(sequence):
    sink = ReorderingSink(io.BytesIO(), 5, 3)
    with pytest.raises(ValueError):
        sink.submit(sequence, b'x')


def test_duplicate_sequence_rejected():
    sink = ReorderingSink(io.BytesIO(), 0, 3)
    sink.submit(1, b'b')
    with pytest.raises(ValueError):
        sink.submit(1, b'b')

    sink.submit(0, b'a')
    with pytest.raises(ValueError):
        sink.submit(0, b'a')


def test_empty_manifest_is_done_immediately():
    sink = ReorderingSink(io.BytesIO(), 0, 0)
    assert sink.is_done


def test_write_error_fails_sink():
    class BrokenOutput(io.BytesIO):
        def write(self, data):
            raise OSError("disk full")

    sink = ReorderingSink(BrokenOutput(), 0, 2)
    with pytest.raises(OSError):
        sink.submit(0, b'a')
    assert sink.state is SinkState.FAILED
    assert isinstance(sink.error, OSError)
    assert sink.submit(1, b'b') is False
