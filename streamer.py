"""
Live relay of the benchmark container's output.

The LogStreamer runs in a background thread while the coordinator polls for
completion. It never decides that the run is over: a follow stream that ends
before cancellation is reopened, and the bytes already relayed are skipped so
the output is not duplicated. The coordinator's final log fetch fills in
whatever the stream missed.
"""
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple, Union

from errors import GatewayError, NotReady
from gateway import ClusterGateway, LogStream
from models.job import ResourceRef

logger = logging.getLogger(__name__)

# --- Configuration ---
DEFAULT_RETRY_INTERVAL = 2.0
DEFAULT_JOIN_TIMEOUT = 10.0
LOG_FILE_PATTERN = "benchmark-results-%Y%m%d-%H%M%S.log"


class LogSink:
    """Append-only byte buffer that tees every chunk to its outputs."""

    def __init__(self, *outputs: BinaryIO):
        self._outputs = [o for o in outputs if o is not None]
        self._chunks: List[bytes] = []
        self._lock = threading.Lock()

    def write(self, data: bytes) -> None:
        if not data:
            return
        with self._lock:
            self._chunks.append(data)
            for output in self._outputs:
                output.write(data)
                output.flush()

    def getvalue(self) -> bytes:
        with self._lock:
            return b"".join(self._chunks)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._chunks)


def open_log_artifact(directory: Union[str, Path] = ".", now: Optional[datetime] = None) -> Tuple[Path, BinaryIO]:
    """Creates the run's timestamped log file in append mode."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / (now or datetime.now()).strftime(LOG_FILE_PATTERN)
    return path, open(path, "ab")


def missing_suffix(relayed: bytes, full: bytes) -> bytes:
    """
    Returns the part of ``full`` not yet relayed.

    When the complete log starts with what was already streamed only the tail is
    new; otherwise the streamed copy cannot be lined up and the whole fetch is kept.
    """
    if relayed and full.startswith(relayed):
        return full[len(relayed):]
    return full


class LogStreamer:

    def __init__(self, gateway: ClusterGateway, ref: ResourceRef, container: str, sink: LogSink,
                 retry_interval: float = DEFAULT_RETRY_INTERVAL):
        self.gateway = gateway
        self.ref = ref
        self.container = container
        self.sink = sink
        self.retry_interval = retry_interval
        self._cancelled = threading.Event()
        self._stream: Optional[LogStream] = None
        self._stream_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.stream_ended = False
        self.relayed = 0

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("LogStreamer already started")
        self._thread = threading.Thread(target=self._run, name=f"log-streamer-{self.container}", daemon=True)
        self._thread.start()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def cancel(self, timeout: float = DEFAULT_JOIN_TIMEOUT) -> None:
        """Stops relaying, closes the stream and waits for the thread to exit."""
        self._cancelled.set()
        with self._stream_lock:
            if self._stream is not None:
                self._stream.close()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"Log streamer for {self.container} did not stop within {timeout:.0f}s")

    def _open(self) -> Optional[LogStream]:
        while not self._cancelled.is_set():
            try:
                return self.gateway.stream_logs(self.ref, self.container)
            except NotReady:
                logger.debug(f"Container {self.container} not ready for streaming, retrying in {self.retry_interval:g}s")
            except GatewayError as e:
                logger.warning(f"Could not open log stream for {self.container}: {e}")
            self._cancelled.wait(self.retry_interval)
        return None

    def _run(self) -> None:
        opened = 0
        while not self._cancelled.is_set():
            stream = self._open()
            if stream is None:
                return
            with self._stream_lock:
                if self._cancelled.is_set():
                    stream.close()
                    return
                self._stream = stream
            opened += 1
            if opened > 1:
                logger.info(f"Reopened log stream for {self.container}, skipping {self.relayed} bytes already relayed")
            self._relay(stream)
            with self._stream_lock:
                self._stream = None
            if self._cancelled.is_set():
                return
            self.stream_ended = True
            logger.debug(f"Log stream for {self.container} ended before cancellation, reopening in {self.retry_interval:g}s")
            self._cancelled.wait(self.retry_interval)

    def _relay(self, stream: LogStream) -> None:
        """Writes the stream's bytes past the ``relayed`` offset to the sink."""
        position = 0
        try:
            for chunk in stream:
                if self._cancelled.is_set():
                    break
                end = position + len(chunk)
                if end > self.relayed:
                    fresh = chunk[max(0, self.relayed - position):]
                    self.sink.write(fresh)
                    self.relayed += len(fresh)
                position = end
        except Exception as e:
            # Closing the stream from cancel() can surface as a read error here.
            if not self._cancelled.is_set():
                logger.warning(f"Log stream for {self.container} broke: {e}")
        finally:
            stream.close()
