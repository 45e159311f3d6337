"""AyuTrace - tamper-evident provenance ledger for herbal supply chains."""

__version__ = "0.1.0"
