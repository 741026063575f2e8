"""
Wallet Monitor - Real-time Solana wallet transaction monitoring engine.

This package streams transactions for a set of tracked Solana wallets from
Helius, normalizes them into buy/sell records and hands each record to a
single delivery callback.
"""

__version__ = "1.0.0"
