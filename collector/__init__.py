"""Google Cloud resource collector that materializes a typed entity graph."""

__version__ = "0.1.0"
