from __future__ import annotations


class BIError(Exception):
    """Base class for errors raised by the widget pipeline."""


class FilterError(BIError, ValueError):
    pass


class DrillDownError(BIError):
    pass


class LayoutError(BIError, ValueError):
    pass


class StoreError(BIError, KeyError):
    def __str__(self) -> str:  # KeyError quotes its message otherwise
        return str(self.args[0]) if self.args else ""


class RemoteAggregationError(BIError):
    pass


class FormulaError(BIError, ValueError):
    pass
