"""Signed units, fork detection, a unit store, DAG assembly and unit routing for asynchronous BFT consensus."""

__version__ = "0.1.0"
__all__ = ["notifications", "runway", "signed", "store", "terminal", "units"]