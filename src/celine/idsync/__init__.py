"""CELINE IdP sync.

Mirrors local user accounts and profiles into the identity provider:
change detection, reconciliation of queued sync messages and a one-shot
batch migration of users that were never synced.
"""

__version__ = "0.1.0"
