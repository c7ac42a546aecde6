"""Client-side verification gate: fingerprint, interaction windows, one delivery."""

__version__ = "0.1.0"
