"""Data portability request lifecycle.

Owners (or administrators on their behalf) request an export of their data.
A request waits for approval, runs a background export and notifies the
configured external services, then keeps the archive downloadable until it
expires.
"""

__version__ = "0.1.0"
