"""Repowatch: background enrichment of bookmarks with repository statistics."""

__version__ = "0.1.0"
