from __future__ import annotations


class GatewayError(Exception):
    """Base class for gateway failures that callers are expected to handle."""


class BootstrapError(GatewayError):
    """The store could not be read, so there is no registry to reconcile."""
