"""Types for clamd communication.

"""
import ipaddress
from dataclasses import dataclass
from enum import Enum


class ClamdException(Exception):
    """Raised when error occurred communicating with the clamd daemon.
    """


class InvalidEndpoint(ClamdException, ValueError):
    """Raised when a clamd endpoint descriptor cannot be parsed.
    """


class ConnectionFailure(ClamdException):
    """Raised when the command or data channel cannot be reached.
    """


class ScanTimeout(ConnectionFailure):
    """Raised when a socket operation or the scan deadline expires.
    """


class ProtocolViolation(ClamdException):
    """Raised when clamd replies with a malformed or missing line.
    """


class TransferFailure(ClamdException):
    """Raised on I/O errors while copying the payload to clamd.
    """


class ScanCancelled(ClamdException):
    """Raised when a scan is aborted through its cancel token.
    """


class ScanVerdict(Enum):
    """Outcome of a clamd scanning.
    """
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    # no trustworthy judgment was obtained from clamd, never treat
    # this as clean
    ERROR = "ERROR"


@dataclass(frozen=True)
class ScanResult():
    """Result of a clamd scanning.

    ``info`` is the clamd answer without the "stream: " prefix, or the
    error description when the verdict is ERROR.
    """
    verdict: ScanVerdict
    info: str = ""

    def __iter__(self):
        # allow `verdict, info = scanner.scan(...)`
        return iter((self.verdict, self.info))

    def __str__(self):
        return f"{self.verdict.value}: {self.info}"


@dataclass(frozen=True)
class Endpoint():
    """Resolved host and port of a clamd daemon.
    """
    host: str
    port: int

    @property
    def is_ipv6(self) -> bool:
        try:
            return isinstance(ipaddress.ip_address(self.host),
                              ipaddress.IPv6Address)
        except ValueError:
            return False

    def url(self, scheme: str = "clam") -> str:
        """Serialize back to a `scheme://host:port/` descriptor.
        """
        return f"{scheme}://{self}/"

    def __str__(self):
        if self.is_ipv6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ScannerConfig():
    """Immutable configuration snapshot of a scanner.
    """
    enabled: bool = False
    endpoint: Endpoint | None = None
    timeout: float = 300  # seconds
