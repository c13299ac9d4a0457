"""
Gastos - Ledger & Aggregation Engine

Holds a user's expenses and categories in memory, mirrors every change
to a remote store, and computes the totals and breakdowns every screen
displays.

DESIGN PRINCIPLES:
1. The remote store is authoritative; the ledger is a session cache
2. Mutations are optimistic and either commit or roll back completely
3. A category in use can never be deleted
4. Readers only ever see whole snapshots
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Gastos Team"
