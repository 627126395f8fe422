"""Swap indexing and FIFO PnL accounting for tracked tokens."""

__version__ = "0.1.0"
