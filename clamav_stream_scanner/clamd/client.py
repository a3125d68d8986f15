"""Client for the clamd STREAM command.

STREAM uses two TCP connections:
 - the command channel, where we send "STREAM" and clamd replies first
   with "PORT <n>" and, once the payload is received, with the result
 - the data channel, opened by us on port <n> of the same host, where
   the raw payload is written.  Closing it tells clamd that the payload
   is over.

Sockets are opened for a single scan and closed afterwards.

"""
import contextlib
import logging
import re
import socket
import threading
import time
import typing as t

from .types import ClamdException, \
    ConnectionFailure, \
    Endpoint, \
    ProtocolViolation, \
    ScanCancelled, \
    ScanResult, \
    ScanTimeout, \
    ScanVerdict, \
    TransferFailure

CMD_ENCODING = "iso-8859-1"
CMD_TERMINATOR = b"\r\n"
PORT_PREFIX = "PORT "
STREAM_PREFIX = "stream: "
OK_ANSWER = "OK"
MAX_LINE_LENGTH = 8192

port_pattern = re.compile(r"[0-9]+")

Payload = t.Union[bytes, bytearray, memoryview, t.IO[bytes]]


class CancelToken:
    """Cancel in-flight scans from another thread.

    Sockets opened by a client are registered on the token; cancel()
    shuts them down so that blocked reads and writes return at once.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._sockets: set[socket.socket] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            sockets = list(self._sockets)

        for sock in sockets:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # already closed by the client
                logging.debug("socket %s already closed on cancel", sock)

    def register(self, sock: socket.socket) -> None:
        with self._lock:
            if self._cancelled:
                raise ScanCancelled("scan cancelled")
            self._sockets.add(sock)

    def unregister(self, sock: socket.socket) -> None:
        with self._lock:
            self._sockets.discard(sock)


class ClamdStreamClient:
    """Client for a single STREAM scan on a clamd TCP endpoint.

    Usage:
    .. code-block:: python

        with ClamdStreamClient(Endpoint("localhost", 3310)) as clamd:
            result = clamd.stream(b"payload")

    Every socket operation is bounded by `timeout`.  The legacy protocol
    has no timeout at all; without one a hung clamd would block the
    caller forever.
    """
    def __init__(self,
                 endpoint: Endpoint,
                 timeout: float = 300,  # seconds
                 buffer_size: int = 8192,
                 cancel_token: CancelToken | None = None,
                 deadline: float | None = None):
        """Create clamd STREAM client.

        :param endpoint: Host and port of the clamd command channel
        :param timeout: Timeout of each socket operation
        :param buffer_size: Size of the chunks copied from a payload stream
        :param cancel_token: Token to abort the scan from another thread
        :param deadline: Overall time budget of the scan in seconds
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.buffer_size = buffer_size
        self.cancel_token = cancel_token
        if deadline is None:
            self._expires_at = None
        else:
            self._expires_at = time.monotonic() + deadline

        self._sock: socket.socket | None = None
        self._reader: t.BinaryIO | None = None
        self._data_sock: socket.socket | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args, **kwargs):
        self.close()
        return False

    def connect(self) -> None:
        """Open the command channel to clamd.
        """
        logging.debug("connecting to %s", self.endpoint)
        self._sock = self._open_socket(self.endpoint.port)
        self._reader = self._sock.makefile("rb")

    def close(self) -> None:
        """Close data channel (if still open) and command channel.
        """
        if self._data_sock is not None:
            logging.warning("deferred close of stream connection to %s",
                            self.endpoint)
            self._close_socket(self._data_sock)
            self._data_sock = None
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._sock is not None:
            self._close_socket(self._sock)
            self._sock = None

    def stream(self, payload: Payload) -> ScanResult:
        """Execute clamd STREAM command.

        :param payload: Bytes, or a binary stream read until exhaustion.
            The stream is not closed.
        :return: ACCEPT or REJECT, with the clamd answer as info
        """
        if self._sock is None:
            raise ClamdException("not connected to clamd")

        with self._cancellable():
            self._check_cancelled()
            logging.debug("writing STREAM command")
            self._send_command("STREAM")

            logging.debug("reading PORT")
            port = self._await_port()
            self._check_cancelled()

            logging.debug("stream connect to %s",
                          Endpoint(self.endpoint.host, port))
            self._data_sock = self._open_socket(port)
            count = self._transfer(payload)
            # clamd reads until we close, do it right now
            self._close_socket(self._data_sock)
            self._data_sock = None
            logging.debug("copied %d bytes", count)
            self._check_cancelled()

            logging.debug("reading result")
            return self._await_verdict()

    def _send_command(self, command: str) -> None:
        full_cmd = command.encode(CMD_ENCODING) + CMD_TERMINATOR
        logging.debug("Sending command: %s", full_cmd)
        with self._io_errors(ConnectionFailure, "sending command to clamd"):
            self._sock.settimeout(self._op_timeout())
            self._sock.sendall(full_cmd)

    def _read_line(self) -> str | None:
        """Read a line from the command channel.

        :return: Line without terminator, None on end of stream
        """
        with self._io_errors(ConnectionFailure, "reading from clamd"):
            self._sock.settimeout(self._op_timeout())
            raw = self._reader.readline(MAX_LINE_LENGTH)
        if not raw:
            return None
        # strip exactly one terminator, stray CRs are part of the line
        if raw.endswith(b"\n"):
            raw = raw[:-1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
        return raw.decode(CMD_ENCODING)

    def _await_port(self) -> int:
        line = self._read_line()
        if line is None:
            raise ProtocolViolation("connection closed early: EOF from "
                                    "clamd when looking for PORT response")
        if not line.startswith(PORT_PREFIX):
            raise ProtocolViolation(f"unexpected response '{line}' from "
                                    "clamd, was expecting PORT <n>")

        port_str = line[len(PORT_PREFIX):]
        if not port_pattern.fullmatch(port_str):
            raise ProtocolViolation(f"non-numeric port in '{line}'")
        port = int(port_str)
        if not 1 <= port <= 65535:
            raise ProtocolViolation(f"port out of range in '{line}'")
        return port

    def _transfer(self, payload: Payload) -> int:
        """Write the whole payload on the data channel.

        :return: Number of bytes written
        """
        if isinstance(payload, (bytes, bytearray, memoryview)):
            with self._io_errors(TransferFailure, "writing payload"):
                self._data_sock.settimeout(self._op_timeout())
                self._data_sock.sendall(payload)
            return memoryview(payload).nbytes

        count = 0
        while True:
            with self._io_errors(TransferFailure, "reading payload"):
                buf = payload.read(self.buffer_size)
            if not buf:
                break
            with self._io_errors(TransferFailure, "writing payload"):
                self._data_sock.settimeout(self._op_timeout())
                self._data_sock.sendall(buf)
            count += len(buf)
        return count

    def _await_verdict(self) -> ScanResult:
        answer = self._read_line()
        if answer is None:
            raise ProtocolViolation("EOF from clamd when looking for result")
        if answer.startswith(STREAM_PREFIX):
            answer = answer[len(STREAM_PREFIX):]

        if answer == OK_ANSWER:
            return ScanResult(ScanVerdict.ACCEPT, answer)
        return ScanResult(ScanVerdict.REJECT, answer)

    def _open_socket(self, port: int) -> socket.socket:
        target = Endpoint(self.endpoint.host, port)
        with self._io_errors(ConnectionFailure,
                             f"connecting to clamd at {target}"):
            sock = socket.create_connection((target.host, target.port),
                                            timeout=self._op_timeout())

        if self.cancel_token is not None:
            try:
                self.cancel_token.register(sock)
            except ScanCancelled:
                sock.close()
                raise
        return sock

    def _close_socket(self, sock: socket.socket) -> None:
        if self.cancel_token is not None:
            self.cancel_token.unregister(sock)
        sock.close()

    def _op_timeout(self) -> float:
        """Timeout for next socket operation, bounded by the deadline.
        """
        if self._expires_at is None:
            return self.timeout

        remaining = self._expires_at - time.monotonic()
        if remaining <= 0:
            raise ScanTimeout(f"scan deadline expired talking to "
                              f"{self.endpoint}")
        return min(self.timeout, remaining)

    def _check_cancelled(self) -> None:
        if self.cancel_token is not None and self.cancel_token.cancelled:
            raise ScanCancelled("scan cancelled")

    @contextlib.contextmanager
    def _io_errors(self, exc_class: type[ClamdException], what: str):
        """Translate socket errors into clamd exceptions.
        """
        try:
            yield
        except TimeoutError as e:
            raise ScanTimeout(f"timed out {what}") from e
        except OSError as e:
            raise exc_class(f"error {what}: {e}") from e

    @contextlib.contextmanager
    def _cancellable(self):
        """Report any failure after cancel() as ScanCancelled.

        Shutting down sockets makes reads return EOF or fail, which
        would otherwise look like a clamd failure.
        """
        try:
            yield
        except ScanCancelled:
            raise
        except (ClamdException, OSError) as e:
            if self.cancel_token is not None and self.cancel_token.cancelled:
                raise ScanCancelled("scan cancelled") from e
            raise
