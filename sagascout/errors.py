"""
プランナーの例外定義。
Exception types raised by the planner.

「見つからない」は例外ではなく None / 空リストで表現します。
"Not found" is a normal branch and is expressed as None or an empty list.
"""


class PlannerError(RuntimeError):
    """Base class for planner failures surfaced to the caller."""


class ParseFailure(PlannerError):
    """Raised when an AI response lacks well-formed JSON of the expected shape."""


class BackendFailure(PlannerError):
    """Raised when the AI backend call fails (network, auth, quota)."""


class PersistenceFailure(PlannerError):
    """Raised when a write to the durable store does not succeed."""
