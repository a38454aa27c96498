"""
Vault Compounder

An async service that periodically compounds yield vaults on Solana:
- Interval-based scheduling per vault
- Retried, confirmation-aware transaction submission
- Pyth price enrichment and performance history
"""

__version__ = "0.1.0"
