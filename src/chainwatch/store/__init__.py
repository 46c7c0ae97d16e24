"""Persistence layer for chainwatch.

The SQL schema lives in :mod:`chainwatch.store.sql`; the registry, cursor
store and alert ledger wrap it with small domain-oriented APIs.
"""
