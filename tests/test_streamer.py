import io
from datetime import datetime

import pytest

from conftest import wait_until
from errors import NotReady
from streamer import LogSink, LogStreamer, missing_suffix, open_log_artifact

CHUNKS = [b"Running OPENDAL benchmark\n", b"read/4KiB  time: [1.0 ms 1.1 ms 1.2 ms]\n", b"Benchmark completed\n"]


def test_log_sink_tees_to_every_output():
    first, second = io.BytesIO(), io.BytesIO()
    sink = LogSink(first, None, second)

    sink.write(b"abc")
    sink.write(b"")
    sink.write(b"def\n")

    assert sink.getvalue() == b"abcdef\n"
    assert len(sink) == 7
    assert first.getvalue() == second.getvalue() == b"abcdef\n"


def test_missing_suffix():
    assert missing_suffix(b"line1\n", b"line1\nline2\n") == b"line2\n"
    assert missing_suffix(b"line1\nline2\n", b"line1\nline2\n") == b""
    assert missing_suffix(b"", b"line1\n") == b"line1\n"
    # Streamed copy that does not line up with the full log: keep everything.
    assert missing_suffix(b"other\n", b"line1\n") == b"line1\n"


def test_open_log_artifact_uses_timestamped_name(tmp_path):
    path, handle = open_log_artifact(tmp_path / "logs", datetime(2024, 1, 2, 3, 4, 5))
    with handle:
        handle.write(b"x")

    assert path.name == "benchmark-results-20240102-030405.log"
    assert path.read_bytes() == b"x"


def test_streamer_relays_every_chunk(gateway, job_request):
    gateway.stream_chunks = CHUNKS
    out = io.BytesIO()
    sink = LogSink(out)
    streamer = LogStreamer(gateway, job_request.pod_ref, job_request.main_container, sink, retry_interval=0.01)

    streamer.start()
    assert wait_until(lambda: streamer.stream_ended)
    streamer.cancel(timeout=2)

    assert not streamer.running
    assert sink.getvalue() == b"".join(CHUNKS)
    assert out.getvalue() == b"".join(CHUNKS)


def test_streamer_retries_until_container_started(gateway, job_request):
    gateway.stream_chunks = CHUNKS
    gateway.stream_not_ready = 2
    sink = LogSink()
    streamer = LogStreamer(gateway, job_request.pod_ref, job_request.main_container, sink, retry_interval=0.01)

    streamer.start()
    assert wait_until(lambda: streamer.stream_ended)
    streamer.cancel(timeout=2)

    assert len(gateway.called("stream_logs")) >= 3
    assert sink.getvalue() == b"".join(CHUNKS)


def test_stream_that_ends_early_is_reopened_without_duplicates(gateway, job_request):
    # The first stream drops after two chunks; the reopened one replays the log from the start.
    gateway.stream_scripts = [CHUNKS[:2], CHUNKS]
    out = io.BytesIO()
    sink = LogSink(out)
    streamer = LogStreamer(gateway, job_request.pod_ref, job_request.main_container, sink, retry_interval=0.01)

    streamer.start()
    try:
        assert wait_until(lambda: sink.getvalue() == b"".join(CHUNKS))
        assert streamer.running
    finally:
        streamer.cancel(timeout=2)

    assert len(gateway.called("stream_logs")) >= 2
    assert out.getvalue() == b"".join(CHUNKS)
    assert streamer.relayed == len(b"".join(CHUNKS))


def test_reopened_stream_skips_partial_chunk(gateway, job_request):
    gateway.stream_scripts = [[b"abc"], [b"ab", b"cdef"]]
    sink = LogSink()
    streamer = LogStreamer(gateway, job_request.pod_ref, job_request.main_container, sink, retry_interval=0.01)

    streamer.start()
    try:
        assert wait_until(lambda: sink.getvalue() == b"abcdef")
    finally:
        streamer.cancel(timeout=2)

    assert sink.getvalue() == b"abcdef"


def test_cancel_before_stream_opens(gateway, job_request):
    gateway.fail_on["stream_logs"] = NotReady("waiting to start")
    sink = LogSink()
    streamer = LogStreamer(gateway, job_request.pod_ref, job_request.main_container, sink, retry_interval=0.01)

    streamer.start()
    assert wait_until(lambda: len(gateway.called("stream_logs")) >= 1)
    streamer.cancel(timeout=2)

    assert not streamer.running
    assert not streamer.stream_ended
    assert sink.getvalue() == b""


def test_start_twice_is_rejected(gateway, job_request):
    streamer = LogStreamer(gateway, job_request.pod_ref, job_request.main_container, LogSink(), retry_interval=0.01)
    streamer.start()
    try:
        with pytest.raises(RuntimeError):
            streamer.start()
    finally:
        streamer.cancel(timeout=2)
