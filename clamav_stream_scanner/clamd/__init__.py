"""Python bindings for the clamd STREAM command over TCP.

For details about commands, see man clamd(8).

Usage:
.. code-block:: python

    scanner = ClamScanner()
    scanner.configure("clam://localhost:3310/")
    result = scanner.scan(open("/my/file.txt", "rb"))

A new pair of connections (command and data channel) is opened for each
scan, so a single ClamScanner can be used by many threads at once.

For the raw protocol, without error mapping:
.. code-block:: python

    with ClamdStreamClient(resolve_endpoint("clam://localhost:3310/")) as clamd:
        result = clamd.stream(b"some bytes")

"""

from .types import ClamdException, \
    ConnectionFailure, \
    Endpoint, \
    InvalidEndpoint, \
    ProtocolViolation, \
    ScanCancelled, \
    ScannerConfig, \
    ScanResult, \
    ScanTimeout, \
    ScanVerdict, \
    TransferFailure  # noqa
from .endpoint import DEFAULT_URL, resolve_endpoint  # noqa
from .client import CancelToken, ClamdStreamClient  # noqa
from .scanner import ClamScanner  # noqa
