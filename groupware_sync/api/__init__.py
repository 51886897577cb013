"""
groupware_sync.api - Remote store boundary

Remote item types, the search filter tree, remote errors and the in-memory
reference store.
"""
