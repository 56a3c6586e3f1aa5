"""
storage — Key/value persistent store abstraction.

Modules:
    store   — PersistentStore interface, in-memory and Redis backends
"""
