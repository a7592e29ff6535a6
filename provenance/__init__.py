"""
Supply-Chain Provenance Ledger

An append-only, role-gated ledger of product custody and lifecycle
transitions, with history views derived from the hash-chained fact log.
"""

__version__ = "0.1.0"
