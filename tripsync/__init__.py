"""
TripSync - Source Package

Local-first synchronization engine and deterministic monetary ledger for
small groups planning shared trips while intermittently offline.

DESIGN PRINCIPLES:
1. Local intent is always captured first, the network comes second
2. Money is integer minor units, never floats
3. No silent conflict resolution
4. Every sync step must be auditable
5. Remote backend is swappable
"""

__version__ = "1.0.0"
__author__ = "TripSync Team"
