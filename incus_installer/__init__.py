"""
Incus installer — staged, idempotent installation of the Incus daemon.
"""

__version__ = "0.1.0"
