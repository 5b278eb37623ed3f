"""Exception types raised by the sessionization and funnel pipeline."""


class SessionFunnelError(Exception):
    """Base class for all pipeline errors."""


class InvalidInputError(SessionFunnelError, ValueError):
    """Input events or parameters cannot be processed (e.g. strict timestamp parsing failed)."""


class EmptyPartitionError(SessionFunnelError):
    """A customer partition or shard reached the segmenter with zero events."""


class NoDataError(SessionFunnelError):
    """
    A metric's source population is empty.

    Raised instead of returning 0.0 so callers can tell "insufficient data"
    apart from a genuinely zero-valued metric.
    """


class UpstreamUnavailableError(SessionFunnelError):
    """The ingestion source, staging area or warehouse could not be reached."""
