"""Attachment scanner built on the clamd STREAM command.

One ClamScanner is shared by all the callers of an application.  Its
configuration is an immutable snapshot swapped as a whole, so scans
never need a lock and never see a half-applied configuration.

"""
import logging
import threading

from .client import CancelToken, ClamdStreamClient, Payload
from .endpoint import resolve_endpoint
from .types import ClamdException, \
    Endpoint, \
    InvalidEndpoint, \
    ScannerConfig, \
    ScanResult, \
    ScanVerdict

DISABLED_MESSAGE = "attachment scan is disabled"


class ClamScanner:
    """Scan attachments with a clamd daemon.

    Usage:
    .. code-block:: python

        scanner = ClamScanner()
        scanner.configure("clam://localhost:3310/")
        verdict, info = scanner.scan(b"attachment bytes")

    scan() never raises: failures are returned as ScanVerdict.ERROR.
    """
    def __init__(self, buffer_size: int = 8192):
        self.buffer_size = buffer_size
        self._config = ScannerConfig()
        self._config_lock = threading.Lock()

    @property
    def config(self) -> ScannerConfig:
        return self._config

    @property
    def endpoint(self) -> Endpoint | None:
        return self._config.endpoint

    def configure(self,
                  descriptor: str | None = None,
                  enabled: bool = True,
                  timeout: float = 300) -> None:
        """(Re)configure the scanner.

        :param descriptor: clamd url like clam://host:port/, None for default
        :param enabled: Whether scanning is enabled
        :param timeout: Timeout in seconds of each socket operation
        :raises InvalidEndpoint: if descriptor is malformed; the scanner
            is left disabled
        """
        with self._config_lock:
            try:
                endpoint = resolve_endpoint(descriptor)
            except InvalidEndpoint as e:
                self._config = ScannerConfig()
                logging.error("error configuring scanner: %s", e)
                raise

            self._config = ScannerConfig(enabled=enabled,
                                         endpoint=endpoint,
                                         timeout=timeout)

        if enabled:
            logging.info("attachment scan enabled host=[%s] port=[%s]",
                         endpoint.host, endpoint.port)
        else:
            logging.info(DISABLED_MESSAGE)

    def disable(self) -> None:
        with self._config_lock:
            self._config = ScannerConfig()
        logging.info(DISABLED_MESSAGE)

    def is_enabled(self) -> bool:
        config = self._config
        return config.enabled and config.endpoint is not None

    def scan(self,
             payload: Payload,
             cancel_token: CancelToken | None = None,
             deadline: float | None = None) -> ScanResult:
        """Scan a payload with clamd.

        :param payload: Bytes, or a binary stream owned by the caller
        :param cancel_token: Token to abort the scan from another thread
        :param deadline: Overall time budget of the scan in seconds
        :return: ACCEPT, REJECT, or ERROR when no verdict was obtained
        """
        # read the snapshot once, a concurrent configure() must not
        # change it under our feet
        config = self._config
        if not config.enabled or config.endpoint is None:
            return ScanResult(ScanVerdict.ERROR, DISABLED_MESSAGE)

        try:
            with ClamdStreamClient(config.endpoint,
                                   timeout=config.timeout,
                                   buffer_size=self.buffer_size,
                                   cancel_token=cancel_token,
                                   deadline=deadline) as clamd:
                result = clamd.stream(payload)
        except ClamdException as e:
            logging.error("error communicating with clamd at %s: %s",
                          config.endpoint, e)
            return ScanResult(ScanVerdict.ERROR, str(e))
        except Exception as e:
            logging.exception("exception communicating with clamd at %s",
                              config.endpoint)
            return ScanResult(ScanVerdict.ERROR, str(e))

        logging.info("scanned payload with clamd at %s: %s",
                     config.endpoint, result)
        return result
