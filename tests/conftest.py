import socket
import socketserver
import threading

import pytest

from clamav_stream_scanner import app, configure_scanner, scanner

EICAR = br"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


def default_answer(data: bytes) -> bytes:
    if EICAR in data:
        return b"stream: Eicar-Test-Signature FOUND"
    return b"stream: OK"


class FakeClamdHandler(socketserver.StreamRequestHandler):
    """Speaks the clamd STREAM protocol on the command channel.
    """
    def handle(self):
        server = self.server
        command = self.rfile.readline()
        if not command:
            return
        server.commands.append(command)

        if server.behaviour == "close_early":
            return
        if server.port_line is not None:
            self.wfile.write(server.port_line)
            server.release.wait(5)
            return

        with socket.create_server(("127.0.0.1", 0)) as data_listener:
            data_listener.settimeout(5)
            port = data_listener.getsockname()[1]
            self.wfile.write(f"PORT {port}\r\n".encode())
            conn, _ = data_listener.accept()
            with conn:
                conn.settimeout(5)
                chunks = []
                buf = conn.recv(65536)
                while buf:
                    chunks.append(buf)
                    buf = conn.recv(65536)

        data = b"".join(chunks)
        server.received.append(data)
        server.data_received.set()

        if server.behaviour == "no_verdict":
            return
        if server.behaviour == "hang":
            server.release.wait(10)
            return
        self.wfile.write(server.answer(data) + b"\r\n")


class FakeClamd(socketserver.ThreadingTCPServer):
    """Fake clamd daemon on 127.0.0.1, random port.

    behaviour: None (answer with `answer(data)`), "close_early" (close
    after STREAM), "no_verdict" (close after the payload), "hang" (never
    answer after the payload).  `port_line` replaces the PORT reply.
    """
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self):
        super().__init__(("127.0.0.1", 0), FakeClamdHandler)
        self.behaviour = None
        self.port_line = None
        self.answer = default_answer
        self.commands = []
        self.received = []
        self.data_received = threading.Event()
        self.release = threading.Event()

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        return f"clam://{host}:{port}/"

    def handle_error(self, request, client_address):
        # clients closing early are part of the tests
        pass


@pytest.fixture()
def fake_clamd():
    server = FakeClamd()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    yield server

    server.release.set()
    server.shutdown()
    server.server_close()
    thread.join(5)


@pytest.fixture()
def closed_port():
    """A local port where nobody is listening.
    """
    with socket.create_server(("127.0.0.1", 0)) as sock:
        port = sock.getsockname()[1]
    return port


@pytest.fixture()
def test_app(fake_clamd):
    app.config.update({
        "TESTING": True,
        "ATTACHMENTS_SCAN_ENABLED": True,
        "ATTACHMENTS_SCAN_URL": fake_clamd.url,
        "ATTACHMENTS_SCAN_TIMEOUT": 5,
    })
    configure_scanner()

    yield app

    # clean up / reset resources here
    app.config["ATTACHMENTS_SCAN_ENABLED"] = False
    scanner.disable()


@pytest.fixture()
def client(test_app):
    return test_app.test_client()


@pytest.fixture()
def eicar() -> bytes:
    """EICAR anti-malware test string (safe; every AV recognises it)."""
    return EICAR
