"""Hardened I/O helpers shared by the key store, policy loader and ledger."""
