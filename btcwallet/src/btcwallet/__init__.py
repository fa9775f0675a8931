"""
btcwallet - Single-key and multisig Bitcoin wallet built around PSBTs.
"""

__version__ = "0.3.0"
