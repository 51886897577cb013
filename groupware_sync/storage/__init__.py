"""
groupware_sync.storage - Persistence module

Metadata database, typed extension payload and the local store boundary.
"""
