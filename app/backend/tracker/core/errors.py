"""Exception hierarchy for performance analytics."""


class PerformanceError(Exception):
    """Base class for performance analytics failures."""


class DataSourceError(PerformanceError):
    """Reading one entity's records from the data source failed."""


class AggregationError(PerformanceError):
    """Shaping a full batch of summaries failed."""


class CacheStoreError(PerformanceError):
    """Durable cache storage could not be read or written."""
