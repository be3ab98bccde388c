"""
Key derivation, addresses, account descriptors, ownership and sessions.
"""
