"""
Financial Operations Control Plane

Double-entry ledger posting and reversal, maker-checker approval gating
driven by a permission matrix, and a hash-chained audit log with a
day-grouped timeline read model.
"""

__version__ = "1.0.0"
