"""Bidirectional lock/release relay between a Solana program and an EVM bridge contract."""

__version__ = "0.1.0"
