"""
Persistence for the portal notifier.

This package contains:
- Atomic JSON file helpers and the state directory lock
- The entity cache and its file and in-memory stores
"""
