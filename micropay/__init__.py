"""Micropay oracle: unlock paid content once its payment settles."""

__version__ = "0.1.0"
