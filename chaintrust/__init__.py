"""ChainTrust: verification and trust scoring for web3 organizations."""

__version__ = "1.0.0"
