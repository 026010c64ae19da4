"""
IdP User Sync - Import users from identity provider groups into a local user store.

Reconciles the members of authorized IdP groups with local accounts: creates
missing accounts, refreshes profiles, links supervisors and deactivates
accounts that are no longer listed.
"""

__version__ = "1.0.0"
__author__ = "IdP User Sync Team"
