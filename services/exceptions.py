"""
Error taxonomy for the reconciliation pipeline.

Per-record errors (one pod, one node update) are caught and logged by the
cycles; phase-level errors (fetch exhausted, transaction failed, cycle
timeout) abort only the running cycle.
"""


class PodNetError(Exception):
    """Base class for all pipeline errors."""


class TransportError(PodNetError):
    """Network/connection failure or an unreadable response body."""


class RpcTimeoutError(PodNetError, TimeoutError):
    """No response from an RPC endpoint within the timeout."""


class RpcError(PodNetError):
    """The remote returned a JSON-RPC error envelope."""

    def __init__(self, message, code=None):
        super().__init__(message)
        self.code = code


class ValidationError(PodNetError):
    """A record is malformed or misses its identity field."""


class PersistenceError(PodNetError):
    """The store rejected a write."""


class AllEndpointsFailedError(PodNetError):
    """Every candidate RPC endpoint failed; carries one message per candidate."""

    def __init__(self, errors):
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors)
        super().__init__(f"All {len(self.errors)} RPC nodes failed. Errors: {summary}")


class CycleTimeoutError(PodNetError, TimeoutError):
    """A reconciliation cycle exceeded its wall-clock budget."""
