"""
Exceptions raised by the trust and referral engines.

Everything derives from ValueError so callers that already guard engine
calls with ``except ValueError`` keep working.
"""


class TrustEngineError(ValueError):
    """Base class for invalid input or unmet preconditions."""


class NoNodesError(TrustEngineError):
    """The trust graph has no nodes to rank."""


class AnchorMissingError(TrustEngineError):
    """The configured anchor node is not part of the node set."""


class InvalidAllocationError(TrustEngineError):
    """An allocation row cannot be stored as given."""


class InvalidForwardError(TrustEngineError):
    """A job forward is malformed, e.g. a node forwarding to itself."""


class InvalidReferralError(TrustEngineError):
    """A referral is malformed or not in a state that allows the operation."""


class ComputationCancelled(TrustEngineError):
    """A run was cancelled by its caller before it finished."""


class ComputationTimeout(TrustEngineError):
    """A run exceeded its wall-clock deadline."""
