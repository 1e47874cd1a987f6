"""BlockParties: pooled escrow ledger with pluggable exchanges."""

__version__ = "0.1.0"
