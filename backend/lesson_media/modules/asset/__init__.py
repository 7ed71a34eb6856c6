"""Media asset module.

Persists uploaded lesson videos, owns the processing status state machine
and reclaims disk space for aged assets.
"""
