"""
groupware_sync - CRM and groupware synchronization engine.

Keeps calendar, contact and mail records of a CRM database and a groupware
mailbox consistent across repeated incremental sync passes.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
