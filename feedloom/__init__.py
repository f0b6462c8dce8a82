"""Top-level package for the feedloom aggregator.

This package contains the refresh scheduler, the per-source update engine,
the classification and filter pipeline, and the cache layer that together
keep a deduplicated, published snapshot of every configured feed.
"""

__all__ = []
