"""
GRC Sync: synchronization engine between a local compliance-control store and a
remote GRC system of record.
"""

__version__ = "0.3.0"
