"""State/store layer.

This package is the single source of truth for how accepted location samples
and status transitions are merged into a deterministic per-parcel snapshot.
"""
