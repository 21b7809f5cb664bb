"""Payment authorization holds and their reconciliation with order fulfillment."""

__version__ = "0.1.0"
