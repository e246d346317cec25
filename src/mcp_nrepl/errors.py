"""Exception types raised inside the bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for bridge errors."""


class SupervisorError(BridgeError):
    """The embedded backend cannot perform the requested transition."""


class BackendStartupError(SupervisorError):
    """The embedded backend did not come up."""


class ToolInputError(BridgeError):
    """A tool call had missing or invalid arguments."""


class ResourceNotFound(BridgeError):
    """A resource URI or prompt name is not known."""
