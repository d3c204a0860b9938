"""
rumpeldrop/errors.py

Exception hierarchy for rumpeldrop.

Fatal errors abort the run before any output is written. Per-address
lookup failures are not exceptions at this level: they are caught where
the lookup happens and recorded in a RunSummary instead.
"""


class RumpelDropError(Exception):
    """Base class for all rumpeldrop errors."""
    pass


class ConfigurationError(RumpelDropError):
    """Missing or invalid configuration. Raised before any I/O."""
    pass


class UpstreamDataError(RumpelDropError):
    """Malformed or missing input data (events, snapshots, leaves)."""
    pass


class EmptyTreeError(UpstreamDataError):
    """A Merkle tree was requested over zero leaves."""
    pass


class OverrideMismatchError(UpstreamDataError):
    """Override redistribution does not match the source balance (strict mode)."""
    pass


class RpcError(RumpelDropError):
    """Chain JSON-RPC call failed."""
    pass


class SnapshotStoreError(RumpelDropError):
    """Distribution snapshot store request failed."""
    pass
