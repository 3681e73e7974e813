"""Error taxonomy shared by providers, the store and the tick jobs.

Only failures that should abort something are exceptions. Duplicate
suppression and risk-limit rejections are reported as reason strings on
the job results instead.
"""

from __future__ import annotations


class ArbiterError(Exception):
    """Base class for all arbiter errors."""


class DataUnavailable(ArbiterError):
    """A quote or snapshot needed for a unit of work is missing or unusable."""


class InvalidQuote(DataUnavailable):
    """The venue answered, but the book is non-positive or crossed."""


class QuoteFetchError(DataUnavailable):
    """The call to the venue failed (transport, HTTP status, timeout)."""


class PersistenceFailure(ArbiterError):
    """A repository read or write failed. Fatal for the current job only."""


class ExternalServiceFailure(ArbiterError):
    """The optional re-ranker failed. Always degraded to the fallback score."""
