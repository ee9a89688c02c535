"""
重组任务端到端测试
"""

import os
import threading

import pytest
from Crypto.Cipher import AES

from hls_reassembler import ReassemblyJob
from hls_reassembler.core.crypto import generate_iv_from_sequence
from hls_reassembler.core.errors import DecryptionError, DownloadCancelled, SegmentFetchError
from hls_reassembler.core.utils import create_session

from fakes import FakeResponse, FakeSession, encrypt, quiet_config


KEY = b'0123456789abcdef'


def build_stream(host, count=5, first_sequence=100):
    """构造 master → 加密 media 的完整站点，返回 (session, 源地址, 期望输出)"""
    base = f"https://{host}/vod/"
    session = FakeSession()
    session.add(base + "master.m3u8",
                b"#EXTM3U\n"
                b"#EXT-X-STREAM-INF:BANDWIDTH=300000,RESOLUTION=640x360\nlow.m3u8\n"
                b"#EXT-X-STREAM-INF:BANDWIDTH=900000,RESOLUTION=1280x720\nhigh.m3u8\n")

    lines = ["#EXTM3U", "#EXT-X-TARGETDURATION:4", f"#EXT-X-MEDIA-SEQUENCE:{first_sequence}",
             '#EXT-X-KEY:METHOD=AES-128,URI="key.bin"']
    expected = b''
    for sequence in range(first_sequence, first_sequence + count):
        plain = b'\x47' + f"{host}:{sequence}".encode() * 20
        expected += plain
        session.add(f"{base}hi_{sequence}.ts", encrypt(plain, KEY, generate_iv_from_sequence(sequence)))
        lines += ["#EXTINF:4.0,", f"hi_{sequence}.ts"]
    lines.append("#EXT-X-ENDLIST")

    session.add(base + "high.m3u8", "\n".join(lines).encode())
    session.add(base + "key.bin", KEY)
    return session, base + "master.m3u8", expected


def test_download_to_file(tmp_path):
    session, source, expected = build_stream("cdn.example.com")
    job = ReassemblyJob(source, quiet_config(concurrency=3), session=session)
    output_file = str(tmp_path / "out" / "video.ts")

    assert job.get_status() == {'status': 'not_started'}
    assert job.download(output_file) == output_file

    with open(output_file, 'rb') as f:
        assert f.read() == expected
    assert not os.path.exists(output_file + '.part')

    status = job.get_status()
    assert status['output_file'] == output_file
    assert status['total_segments'] == 5
    assert status['first_sequence'] == 100
    assert status['last_sequence'] == 104
    assert status['resolution'] == '1280x720'
    assert status['is_encrypted'] is True
    assert status['bytes_written'] == len(expected)
    assert session.count("https://cdn.example.com/vod/low.m3u8") == 0
    assert session.count("https://cdn.example.com/vod/key.bin") == 1


def test_resolve_is_cached():
    session, source, _ = build_stream("cdn.example.com", count=2)
    job = ReassemblyJob(source, quiet_config(), session=session)
    assert job.resolve() is job.resolve()
    assert session.count(source) == 1


def test_failed_download_removes_partial_file(tmp_path):
    session, source, _ = build_stream("cdn.example.com")
    session.add("https://cdn.example.com/vod/hi_102.ts", FakeResponse(b'', 500))
    output_file = str(tmp_path / "video.ts")

    with pytest.raises(SegmentFetchError):
        ReassemblyJob(source, quiet_config(max_retries=0), session=session).download(output_file)

    assert not os.path.exists(output_file)
    assert not os.path.exists(output_file + '.part')


def test_failed_download_can_keep_partial_file(tmp_path):
    session, source, _ = build_stream("cdn.example.com")
    session.add("https://cdn.example.com/vod/hi_102.ts", FakeResponse(b'', 500))
    output_file = str(tmp_path / "video.ts")

    with pytest.raises(SegmentFetchError):
        ReassemblyJob(source, quiet_config(max_retries=0, keep_partial=True),
                      session=session).download(output_file)

    assert not os.path.exists(output_file)
    assert os.path.exists(output_file + '.part')


def test_invalid_padding_fails_job_without_output(tmp_path):
    session, source, _ = build_stream("cdn.example.com")
    # 按块对齐，但末字节 0x00 不是合法的 PKCS#7 填充
    bad = AES.new(KEY, AES.MODE_CBC, generate_iv_from_sequence(102)).encrypt(b"\x47" * 47 + b"\x00")
    session.add("https://cdn.example.com/vod/hi_102.ts", bad)
    output_file = str(tmp_path / "video.ts")

    with pytest.raises(DecryptionError) as excinfo:
        ReassemblyJob(source, quiet_config(concurrency=2), session=session).download(output_file)

    assert excinfo.value.sequence == 102
    assert not os.path.exists(output_file)
    assert not os.path.exists(output_file + ".part")


def test_stop_before_run_cancels_job(tmp_path):
    session, source, _ = build_stream("cdn.example.com")
    job = ReassemblyJob(source, quiet_config(), session=session)
    job.stop()
    assert job.cancel_token.is_cancelled()

    with pytest.raises(DownloadCancelled):
        job.download(str(tmp_path / "video.ts"))
    assert not os.path.exists(str(tmp_path / "video.ts.part"))
    assert session.calls == []


def test_independent_jobs_run_concurrently(tmp_path):
    jobs = []
    for host in ("a.example.com", "b.example.com", "c.example.com"):
        session, source, expected = build_stream(host, count=6)
        jobs.append((ReassemblyJob(source, quiet_config(concurrency=2), session=session),
                     str(tmp_path / f"{host}.ts"), expected))

    errors = []

    def run(job, path):
        try:
            job.download(path)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(job, path)) for job, path, _ in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    for job, path, expected in jobs:
        with open(path, 'rb') as f:
            assert f.read() == expected
        assert job.coordinator.key_resolver.fetch_count == 1


def test_session_referer_derived_from_source():
    session = create_session(headers={'User-Agent': 'test'},
                             referer_url="https://media.example.com/vod/master.m3u8")
    assert session.headers['Referer'] == "https://media.example.com/"

    session = create_session(headers={'Referer': 'https://site.example.com/'},
                             referer_url="https://media.example.com/vod/master.m3u8")
    assert session.headers['Referer'] == "https://site.example.com/"
