"""
Core modules for coin-gate.

This package contains the ledger, rate limiter, retrying provider client,
artifact store and the generation orchestrator that composes them.
"""
