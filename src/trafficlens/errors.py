"""Exception types for trafficlens.

only QueryValidationError and StoreError ever reach a caller. the other two
are control flow inside the engine: an unsupported comparison just means the
response has no comparison, a lookup miss means a placeholder gets rendered.
"""


class TrafficLensError(Exception):
    """Base class for all trafficlens errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class QueryValidationError(TrafficLensError):
    """Request parameters can't be turned into a Query.

    the message is shown to the API caller as-is, so keep it human readable.
    """


class UnsupportedComparisonError(TrafficLensError):
    """No comparison query can be derived for this query/mode."""


class StoreError(TrafficLensError):
    """A call to the event store failed."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class LookupMiss(TrafficLensError):
    """Reference data (geo codes etc.) has no entry for the given key."""

    def __init__(self, kind: str, code: object) -> None:
        super().__init__(f"Could not find {kind} info - code: {code!r}")
        self.kind = kind
        self.code = code
