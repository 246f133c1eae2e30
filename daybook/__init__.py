"""Daybook - personal note capture daemon with offline link archiving."""

__version__ = "0.1.0"
