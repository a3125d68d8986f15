import io
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from clamav_stream_scanner.clamd import CancelToken, \
    ClamScanner, \
    Endpoint, \
    InvalidEndpoint, \
    ScanResult, \
    ScanVerdict


@pytest.fixture()
def scanner(fake_clamd):
    scanner = ClamScanner()
    scanner.configure(fake_clamd.url, timeout=5)
    return scanner


def test_configure(fake_clamd):
    scanner = ClamScanner()
    assert not scanner.is_enabled()
    assert scanner.endpoint is None

    scanner.configure(fake_clamd.url, timeout=5)

    assert scanner.is_enabled()
    assert scanner.endpoint == Endpoint(*fake_clamd.server_address[:2])
    assert scanner.config.timeout == 5


def test_configure_default_url():
    scanner = ClamScanner()
    scanner.configure()

    assert scanner.endpoint == Endpoint("localhost", 3310)


def test_configure_disabled(fake_clamd):
    scanner = ClamScanner()
    scanner.configure(fake_clamd.url, enabled=False)

    assert not scanner.is_enabled()
    result = scanner.scan(b"payload")

    assert result.verdict == ScanVerdict.ERROR
    assert result.info == "attachment scan is disabled"
    # no I/O at all
    assert fake_clamd.commands == []


def test_configure_invalid_disables(scanner):
    assert scanner.is_enabled()

    with pytest.raises(InvalidEndpoint):
        scanner.configure("localhost:3310")

    assert not scanner.is_enabled()
    assert scanner.scan(b"payload").verdict == ScanVerdict.ERROR


def test_disable(scanner, fake_clamd):
    scanner.disable()

    assert not scanner.is_enabled()
    assert scanner.scan(b"payload").verdict == ScanVerdict.ERROR
    assert fake_clamd.commands == []


def test_scan_accept(scanner, fake_clamd):
    verdict, info = scanner.scan(b"clean payload")

    assert verdict == ScanVerdict.ACCEPT
    assert info == "OK"
    assert fake_clamd.received == [b"clean payload"]


def test_scan_reject(scanner, fake_clamd):
    fake_clamd.answer = lambda data: b"stream: FOUND virus.test"

    result = scanner.scan(io.BytesIO(b"payload"))

    assert result == ScanResult(ScanVerdict.REJECT, "FOUND virus.test")


def test_scan_infected(scanner, eicar):
    result = scanner.scan(io.BytesIO(eicar))

    assert result.verdict == ScanVerdict.REJECT
    assert result.info == "Eicar-Test-Signature FOUND"


def test_scan_closed_early(scanner, fake_clamd):
    fake_clamd.behaviour = "close_early"

    result = scanner.scan(b"payload")

    assert result.verdict == ScanVerdict.ERROR
    assert "EOF" in result.info


def test_scan_non_numeric_port(scanner, fake_clamd, caplog):
    fake_clamd.port_line = b"PORT abc\r\n"

    with caplog.at_level(logging.ERROR):
        result = scanner.scan(b"payload")

    assert result.verdict == ScanVerdict.ERROR
    assert "non-numeric port" in result.info
    assert "error communicating with clamd" in caplog.text


def test_scan_unreachable(closed_port):
    scanner = ClamScanner()
    scanner.configure(f"clam://127.0.0.1:{closed_port}/")

    result = scanner.scan(b"payload")

    assert result.verdict == ScanVerdict.ERROR
    assert "connecting to clamd" in result.info


def test_scan_unexpected_exception(scanner, caplog):
    with caplog.at_level(logging.ERROR):
        # neither bytes nor a stream
        result = scanner.scan(object())

    assert result.verdict == ScanVerdict.ERROR
    assert "exception communicating with clamd" in caplog.text


def test_scan_timeout(fake_clamd):
    fake_clamd.behaviour = "hang"
    scanner = ClamScanner()
    scanner.configure(fake_clamd.url, timeout=0.5)

    result = scanner.scan(b"payload")

    assert result.verdict == ScanVerdict.ERROR
    assert "timed out" in result.info


def test_scan_deadline(scanner, fake_clamd):
    fake_clamd.behaviour = "hang"

    result = scanner.scan(b"payload", deadline=0.5)

    assert result.verdict == ScanVerdict.ERROR
    assert result.info.startswith("timed out")


def test_scan_cancel(scanner, fake_clamd):
    fake_clamd.behaviour = "hang"
    token = CancelToken()

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(scanner.scan, b"payload", token)
        assert fake_clamd.data_received.wait(5)
        token.cancel()
        result = future.result(timeout=5)

    assert result.verdict == ScanVerdict.ERROR
    assert result.info == "scan cancelled"


def test_scan_idempotent(scanner, fake_clamd, eicar):
    payload = b"prefix " + eicar

    first = scanner.scan(payload)
    second = scanner.scan(payload)

    assert first == second
    assert first.verdict == ScanVerdict.REJECT
    assert fake_clamd.received == [payload, payload]


def test_scan_concurrent(scanner, fake_clamd):
    # both scans must be in flight at the same time to get an answer
    barrier = threading.Barrier(2, timeout=5)

    def echo(data):
        barrier.wait()
        return b"stream: " + data

    fake_clamd.answer = echo

    with ThreadPoolExecutor(max_workers=2) as executor:
        first = executor.submit(scanner.scan, b"first payload")
        second = executor.submit(scanner.scan, io.BytesIO(b"second payload"))

        assert first.result(timeout=10) == \
            ScanResult(ScanVerdict.REJECT, "first payload")
        assert second.result(timeout=10) == \
            ScanResult(ScanVerdict.REJECT, "second payload")

    assert sorted(fake_clamd.received) == [b"first payload",
                                           b"second payload"]


def test_configure_is_atomic():
    scanner = ClamScanner()
    stop = threading.Event()
    torn = []

    def reconfigure():
        while not stop.is_set():
            scanner.configure("clam://first:3310/", timeout=1)
            scanner.configure("clam://second:3311/", enabled=False,
                              timeout=2)

    def read():
        for _ in range(5000):
            config = scanner.config
            if config.endpoint is None:
                continue
            first = config.endpoint == Endpoint("first", 3310)
            if first != (config.timeout == 1) or first != config.enabled:
                torn.append(config)

    writer = threading.Thread(target=reconfigure)
    writer.start()
    readers = [threading.Thread(target=read) for _ in range(4)]
    for reader in readers:
        reader.start()
    for reader in readers:
        reader.join()
    stop.set()
    writer.join()

    assert torn == []
