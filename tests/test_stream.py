import io
import json
import threading
import time

import pytest

from nenya.stream import (
    BLOCKED_MESSAGE,
    STREAM_BUFFER_SIZE,
    ImmediateFlushWriter,
    SSETeeWriter,
    StallReader,
    StreamStalledError,
    blocked_sse_payload,
    copy_stream,
    write_blocked_sse,
)


class Recorder:
    def __init__(self):
        self.body = bytearray()
        self.flush_count = 0

    def write(self, data):
        self.body.extend(data)
        return len(data)

    def flush(self):
        self.flush_count += 1


class BrokenWriter:
    def __init__(self, err):
        self.err = err
        self.flush_count = 0

    def write(self, data):
        raise self.err

    def flush(self):
        self.flush_count += 1


class PlainWriter:
    def __init__(self):
        self.body = bytearray()

    def write(self, data):
        self.body.extend(data)
        return len(data)


class BlockingReader:
    def __init__(self, release):
        self.release = release

    def read(self, size=-1):
        self.release.wait(2)
        return b""


class ErrorReader:
    def read(self, size=-1):
        raise ConnectionResetError("connection reset")


class EventReader:
    def __init__(self, event):
        self.event = event

    def read(self, size=-1):
        self.event.wait(2)
        return b"data: {}\n\n"


def test_write_blocked_sse_content():
    rec = Recorder()
    write_blocked_sse(rec)
    body = rec.body.decode()
    assert body.startswith("data: {")
    assert '"id":"blocked"' in body
    assert '"finish_reason":"stop"' in body
    assert BLOCKED_MESSAGE in body
    assert "data: [DONE]\n" in body
    lines = body.strip().split("\n")
    assert len(lines) >= 2
    assert all(line.startswith("data: ") for line in lines if line)


def test_write_blocked_sse_flushes():
    rec = Recorder()
    write_blocked_sse(rec)
    assert rec.flush_count == 1


def test_write_blocked_sse_two_data_lines():
    rec = Recorder()
    write_blocked_sse(rec)
    assert rec.body.decode().count("data: ") == 2


def test_write_blocked_sse_payload_roundtrip():
    buf = io.BytesIO()
    write_blocked_sse(buf)
    first = buf.getvalue().decode().split("\n\n")[0]
    assert json.loads(first[len("data: "):]) == blocked_sse_payload()


def test_blocked_payload_message():
    payload = blocked_sse_payload()
    assert payload["choices"][0]["delta"]["content"] == "[Response blocked by execution policy]"
    assert payload["object"] == "chat.completion.chunk"


def test_stall_reader_reads_normally():
    with StallReader(io.BytesIO(b"hello world"), 0.05) as reader:
        assert reader.read(11) == b"hello world"


def test_stall_reader_stalls_after_timeout():
    release = threading.Event()
    reader = StallReader(BlockingReader(release), 0.03)
    try:
        time.sleep(0.06)
        with pytest.raises(StreamStalledError):
            reader.read(1024)
    finally:
        reader.stop()
        release.set()


def test_stall_reader_eof_after_data():
    with StallReader(io.BytesIO(b"chunk1"), 0.03) as reader:
        assert reader.read(1024) == b"chunk1"
        time.sleep(0.01)
        assert reader.read(1024) == b""


def test_stall_reader_read_resets_deadline():
    with StallReader(io.BytesIO(b"abcdef"), 0.03) as reader:
        assert reader.read(3) == b"abc"
        time.sleep(0.06)
        assert reader.read(3) == b"def"


def test_stall_reader_stop_prevents_stall():
    reader = StallReader(io.BytesIO(b"late"), 0.03)
    reader.stop()
    time.sleep(0.06)
    assert reader.read(10) == b"late"


def test_stream_stalled_error_message():
    assert str(StreamStalledError()) == "stream stalled: no data received within idle timeout"


def test_flush_writer_flushes_on_every_write():
    rec = Recorder()
    writer = ImmediateFlushWriter(rec)
    assert writer.write(b"chunk1") == 6
    assert rec.flush_count == 1
    writer.write(b"chunk2")
    assert rec.flush_count == 2
    assert bytes(rec.body) == b"chunk1chunk2"


def test_flush_writer_write_error_no_flush():
    broken = BrokenWriter(BrokenPipeError("closed pipe"))
    writer = ImmediateFlushWriter(broken)
    with pytest.raises(BrokenPipeError):
        writer.write(b"data")
    assert broken.flush_count == 0


def test_flush_writer_without_flush():
    plain = PlainWriter()
    writer = ImmediateFlushWriter(plain)
    assert writer.can_flush is False
    assert writer.write(b"abc") == 3
    assert bytes(plain.body) == b"abc"


def test_tee_writer_captures():
    rec = Recorder()
    tee = SSETeeWriter(rec, 100)
    tee.write(b"data: 1\n\n")
    tee.write(b"data: 2\n\n")
    assert tee.captured() == b"data: 1\n\ndata: 2\n\n"
    assert bytes(rec.body) == b"data: 1\n\ndata: 2\n\n"
    assert tee.exceeded is False


def test_tee_writer_exceeds_limit():
    rec = Recorder()
    tee = SSETeeWriter(rec, 5)
    tee.write(b"abc")
    tee.write(b"defg")
    tee.write(b"h")
    assert tee.exceeded is True
    assert tee.captured() == b"abc"
    assert bytes(rec.body) == b"abcdefgh"


def test_tee_writer_unlimited():
    rec = Recorder()
    tee = SSETeeWriter(rec, 0)
    tee.write(b"x" * 1000)
    assert len(tee.captured()) == 1000
    assert tee.exceeded is False


def test_copy_stream_normal():
    dst = PlainWriter()
    assert copy_stream(dst, io.BytesIO(b"hello world"), 4) == 11
    assert bytes(dst.body) == b"hello world"


def test_copy_stream_cancellation():
    event = threading.Event()
    timer = threading.Timer(0.02, event.set)
    timer.start()
    try:
        with pytest.raises(ConnectionAbortedError):
            copy_stream(PlainWriter(), EventReader(event), 1024, event)
    finally:
        timer.cancel()


def test_copy_stream_upstream_read_error():
    with pytest.raises(OSError) as info:
        copy_stream(PlainWriter(), ErrorReader(), 1024)
    assert "reading from upstream" in str(info.value)
    assert "connection reset" in str(info.value)


def test_copy_stream_client_write_error():
    with pytest.raises(OSError) as info:
        copy_stream(BrokenWriter(BrokenPipeError("broken pipe")), io.BytesIO(b"some data"), 4)
    assert "writing to client" in str(info.value)
    assert "broken pipe" in str(info.value)


def test_copy_stream_stall_propagates():
    release = threading.Event()
    reader = StallReader(BlockingReader(release), 0.02)
    try:
        time.sleep(0.05)
        with pytest.raises(StreamStalledError):
            copy_stream(PlainWriter(), reader)
    finally:
        reader.stop()
        release.set()


def test_copy_stream_default_buffer():
    dst = PlainWriter()
    assert copy_stream(dst, io.BytesIO(b"data"), 0) == 4
    assert bytes(dst.body) == b"data"


def test_copy_stream_large_data():
    data = b"A" * (STREAM_BUFFER_SIZE * 3)
    dst = PlainWriter()
    assert copy_stream(dst, io.BytesIO(data), STREAM_BUFFER_SIZE) == len(data)
    assert bytes(dst.body) == data


def test_copy_stream_eof():
    assert copy_stream(PlainWriter(), io.BytesIO(b"end"), 1024) == 3


def test_copy_stream_with_flush_writer():
    sse = b'data: {"chunk":1}\n\ndata: {"chunk":2}\n\ndata: [DONE]\n\n'
    rec = Recorder()
    written = copy_stream(ImmediateFlushWriter(rec), io.BytesIO(sse), 8)
    assert written == len(sse)
    assert bytes(rec.body) == sse
    assert rec.flush_count > 0