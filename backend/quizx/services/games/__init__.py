"""Live game domain services: scoring, registry, store and state machine.

This package holds the game mechanics used by the Socket.IO handlers and
the HTTP routes, keeping transport concerns separated from the core rules.
"""
