"""
Build cache for languagepack.

- store: path-keyed cache namespaces replaced atomically
- metadata: small named values describing the previous build
- invalidation: rules deciding which cached namespaces to purge
"""

from .invalidation import (
    DEPENDENCY_NAMESPACE,
    RULES,
    VENDOR_NAMESPACE,
    CacheAction,
    CacheInvalidator,
    CacheObservations,
    FreshFacts,
    InvalidationDecision,
    InvalidationRule,
    PurgeAction,
    decide,
)
from .metadata import MetadataStore
from .store import CacheStore

__all__ = [
    "CacheStore",
    "MetadataStore",
    "DEPENDENCY_NAMESPACE",
    "RULES",
    "VENDOR_NAMESPACE",
    "CacheAction",
    "CacheInvalidator",
    "CacheObservations",
    "FreshFacts",
    "InvalidationDecision",
    "InvalidationRule",
    "PurgeAction",
    "decide",
]
