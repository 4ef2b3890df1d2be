"""
Tiered media storage for the tracking dashboard.

Provides a pluggable storage-provider layer and the services that move and
audit stored media:
  - Local volume, SSD cache and S3 object-store providers behind one contract
  - Verified cross-provider transfers (copy -> verify -> commit -> delete)
  - Catalog reconciliation: dedup, legacy migration, broken-reference scans
  - Remote existence audit that maintains the tri-state ``verified`` flag
"""

from __future__ import annotations

__version__ = "1.0.0"
