"""Parsing of clamd endpoint descriptors.

A descriptor looks like ``clam://host:port/``.  IPv6 hosts must be
enclosed in brackets, e.g. ``clam://[::1]:3310/``.

"""
import ipaddress
import re

from .types import Endpoint, InvalidEndpoint

DEFAULT_SCHEME = "clam"
DEFAULT_URL = "clam://localhost:3310/"

port_pattern = re.compile(r"[0-9]+")
hostname_pattern = re.compile(r"[A-Za-z0-9._-]+")


def resolve_endpoint(descriptor: str | None,
                     scheme: str = DEFAULT_SCHEME) -> Endpoint:
    """Resolve a clamd endpoint descriptor into host and port.

    :param descriptor: Descriptor like clam://host:port/, None for default
    :param scheme: Expected scheme, compared case-insensitively
    :return: Validated endpoint
    :raises InvalidEndpoint: if the descriptor is malformed
    """
    if descriptor is None:
        descriptor = DEFAULT_URL

    prefix = f"{scheme}://"
    if not descriptor.lower().startswith(prefix.lower()):
        raise InvalidEndpoint(f"invalid clamd url {descriptor}")

    host_port = descriptor[len(prefix):]
    if host_port.endswith("/"):
        host_port = host_port[:-1]

    try:
        host, port_str = _split_host_port(host_port)
    except ValueError as e:
        raise InvalidEndpoint(
            f"cannot parse clamd url {descriptor}: {e}") from e

    if not port_pattern.fullmatch(port_str):
        raise InvalidEndpoint(
            f"cannot parse clamd url {descriptor}: "
            f"unparseable port number '{port_str}'")
    port = int(port_str)
    if not 1 <= port <= 65535:
        raise InvalidEndpoint(
            f"cannot parse clamd url {descriptor}: port {port} out of range")

    return Endpoint(host=host, port=port)


def _split_host_port(host_port: str) -> tuple[str, str]:
    """Split `host:port` or `[ipv6]:port` in its two parts.
    """
    if host_port.startswith("["):
        closing = host_port.find("]")
        if closing < 0:
            raise ValueError("missing closing bracket")
        host = host_port[1:closing]
        rest = host_port[closing + 1:]
        if not rest.startswith(":"):
            raise ValueError("missing port")
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            raise ValueError(f"invalid bracketed IPv6 host '{host}'")
        return host, rest[1:]

    colons = host_port.count(":")
    if colons == 0:
        raise ValueError("missing port")
    if colons > 1:
        # ambiguous port boundary
        raise ValueError("IPv6 hosts must be enclosed in brackets")

    host, port = host_port.split(":")
    if not host or not hostname_pattern.fullmatch(host):
        raise ValueError(f"invalid host '{host}'")
    return host, port
