from typing import Optional


class HopfleetError(Exception):
    """Base exception for hopfleet."""


class ConfigurationError(HopfleetError):
    """Malformed chain specification or no usable credentials."""


class HopConnectError(HopfleetError):
    """Dial, tunnel or handshake failure at one hop of a chain."""

    def __init__(self, message: str, hop: Optional[str] = None, prefix: Optional[str] = None):
        self.hop = hop
        self.prefix = prefix
        if hop:
            message = f"{message} (hop: {hop})"
        super().__init__(message)


class HostConnectError(HopfleetError):
    """A registry could not bring a host online."""


class DuplicateHostError(HopfleetError):
    """A host with this title is already registered."""


class ExecutionError(HopfleetError):
    """Opening the remote session, pty or command failed."""


class SessionClosedError(HopfleetError):
    """The session was closed and can no longer run commands."""


class UnknownHostError(HopfleetError):
    """No registered host has this title."""
