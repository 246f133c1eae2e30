"""Derived indexes over the note journal."""

from .fts import SearchIndex, tokenize

__all__ = ['SearchIndex', 'tokenize']
