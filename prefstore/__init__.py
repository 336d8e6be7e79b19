"""
prefstore - storage and concurrency core for per-user preferences.

This package serves two access patterns over the same records:
- A single bulk "everything for this owner" read, cached as one aggregate
- Fine-grained per-item reads and versioned writes

Architecture:
    ┌─────────────┐     ┌──────────────────┐     ┌────────────────────┐
    │  Transport  │────▶│ PreferenceService│────▶│ConcurrencyController│
    │ (external)  │     │   (service.py)   │     │  CAS + idempotency │
    └─────────────┘     └────────┬─────────┘     └─────────┬──────────┘
                                 │                         │
                 ┌───────────────┼───────────────┐         │
                 ▼               ▼               ▼         ▼
           ┌──────────┐    ┌──────────┐    ┌──────────────────┐
           │Aggregate │    │ Ordering │    │    EntryStore    │
           │  Cache   │    │  Engine  │    │ (memory / sqlite)│
           └──────────┘    └──────────┘    └──────────────────┘

Invariants:
    - The EntryStore is the only source of truth
    - The aggregate cache is derived state, invalidated after every write
    - (owner_id, category, position, key) is the identity of an entry
    - Entry versions start at 1 and only move forward

How to change safely:
    - New categories parse as UNRECOGNIZED until given a CategoryKind
    - Storage backends must implement the EntryStore protocol in full
    - Keep AggregateView.to_dict() stable; it is the cache wire format
"""

from ._version import __version__

__all__ = ["__version__"]
