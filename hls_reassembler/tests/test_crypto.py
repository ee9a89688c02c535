"""
密钥解析与解密测试
"""

import threading
import time

import pytest
import requests
from Crypto.Cipher import AES

from hls_reassembler.core.crypto import (
    AESDecryptor, EncryptionKey, EncryptionMethod, KeyResolver,
    generate_iv_from_sequence, parse_iv_string
)
from hls_reassembler.core.errors import DecryptionError, KeyFetchError

from fakes import FakeResponse, FakeSession, encrypt, quiet_config


KEY = bytes(range(16))
KEY_URI = "https://cdn.example.com/keys/k.bin"


def aes_key(iv=None):
    return EncryptionKey(uri=KEY_URI, method=EncryptionMethod.AES_128_CBC, key_bytes=KEY, explicit_iv=iv)


def test_decrypt_round_trip_with_explicit_iv():
    iv = b'\x01' * 16
    plain = b'hello ts payload' * 10 + b'tail'
    assert AESDecryptor().decrypt(encrypt(plain, KEY, iv), aes_key(iv), 0) == plain


def test_decrypt_uses_sequence_number_when_iv_missing():
    plain = b'\x47' + b'segment forty-two' * 7
    encrypted = encrypt(plain, KEY, generate_iv_from_sequence(42))
    assert AESDecryptor().decrypt(encrypted, aes_key(), 42) == plain


def test_generate_iv_from_sequence():
    assert generate_iv_from_sequence(1) == b'\x00' * 15 + b'\x01'
    assert generate_iv_from_sequence(258) == b'\x00' * 14 + b'\x01\x02'


def test_parse_iv_string():
    assert parse_iv_string('0x1') == b'\x00' * 15 + b'\x01'
    assert parse_iv_string('0X000102030405060708090A0B0C0D0E0F') == bytes(range(16))
    with pytest.raises(ValueError):
        parse_iv_string('0xZZ')
    with pytest.raises(ValueError):
        parse_iv_string('0x' + '00' * 17)


def test_with_iv_returns_copy():
    key = aes_key()
    with_iv = key.with_iv(b'\x02' * 16)
    assert with_iv.explicit_iv == b'\x02' * 16
    assert key.explicit_iv is None
    assert key.with_iv(None) is key


def test_plaintext_passthrough():
    decryptor = AESDecryptor()
    assert decryptor.decrypt(b'abc', None, 0) == b'abc'
    none_key = EncryptionKey(uri='', method=EncryptionMethod.NONE, key_bytes=b'')
    assert decryptor.decrypt(b'abc', none_key, 0) == b'abc'


def test_misaligned_data_raises_decryption_error():
    with pytest.raises(DecryptionError) as excinfo:
        AESDecryptor().decrypt(b'x' * 17, aes_key(), 3)
    assert excinfo.value.sequence == 3


def test_empty_encrypted_segment_raises_decryption_error():
    with pytest.raises(DecryptionError):
        AESDecryptor().decrypt(b'', aes_key(), 0)


def test_invalid_padding_raises_decryption_error():
    iv = b'\x05' * 16
    # 末字节为 0x00，不是合法的 PKCS#7 填充
    raw = AES.new(KEY, AES.MODE_CBC, iv).encrypt(b'\x11' * 31 + b'\x00')
    with pytest.raises(DecryptionError) as excinfo:
        AESDecryptor().decrypt(raw, aes_key(iv), 9)
    assert excinfo.value.sequence == 9


def test_key_resolver_caches_by_uri():
    session = FakeSession({KEY_URI: KEY})
    resolver = KeyResolver(session, quiet_config())

    first = resolver.resolve(KEY_URI)
    second = resolver.resolve(KEY_URI)

    assert first is second
    assert first.key_bytes == KEY
    assert first.method is EncryptionMethod.AES_128_CBC
    assert session.count(KEY_URI) == 1


def test_key_resolver_single_flight_under_concurrency():
    def slow_key(url, headers):
        time.sleep(0.2)
        return FakeResponse(KEY)

    session = FakeSession({KEY_URI: slow_key})
    resolver = KeyResolver(session, quiet_config())
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        key = resolver.resolve(KEY_URI)
        with lock:
            results.append(key)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == workers
    assert all(key is results[0] for key in results)
    assert session.count(KEY_URI) == 1
    assert resolver.fetch_count == 1


def test_key_with_wrong_length_is_rejected_once():
    session = FakeSession({KEY_URI: b'short'})
    resolver = KeyResolver(session, quiet_config())

    with pytest.raises(KeyFetchError) as excinfo:
        resolver.resolve(KEY_URI)
    assert excinfo.value.uri == KEY_URI

    with pytest.raises(KeyFetchError):
        resolver.resolve(KEY_URI)
    assert session.count(KEY_URI) == 1


def test_key_http_failure_raises_key_fetch_error():
    session = FakeSession({KEY_URI: FakeResponse(b'', 403)})
    with pytest.raises(KeyFetchError) as excinfo:
        KeyResolver(session, quiet_config()).resolve(KEY_URI)
    assert isinstance(excinfo.value.cause, requests.HTTPError)


def test_key_resolver_reads_local_key(tmp_path):
    key_path = tmp_path / "k.bin"
    key_path.write_bytes(KEY)
    key = KeyResolver(FakeSession(), quiet_config()).resolve(str(key_path))
    assert key.key_bytes == KEY


@pytest.mark.parametrize("sequence", [-1, 2 ** 128])
def test_sequence_outside_iv_range_raises_decryption_error(sequence):
    with pytest.raises(DecryptionError) as excinfo:
        AESDecryptor().decrypt(b'\x00' * 32, aes_key(), sequence)
    assert excinfo.value.sequence == sequence
