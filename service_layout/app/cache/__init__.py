"""
Cache package for the layout service.

Provides three in-process tiers (user preferences, role templates, group
overrides), each with its own TTL and size bound and least-recently-used
eviction at capacity. Tiers are constructed explicitly and injected into
the resolver; there is no module-level cache state.
"""

from .tiers import CacheTier, LayoutCaches

__all__ = ["CacheTier", "LayoutCaches"]
