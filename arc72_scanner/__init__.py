"""Scan Algorand rounds for verified ARC-72 NFT transfers."""

__version__ = "0.1.0"
