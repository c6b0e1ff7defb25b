"""
CSV Airdrop — distribute an ERC-20 token to many recipients in one transaction.

Reads a recipient,amount list, converts every amount exactly into the
token's smallest unit, checks that the distributor contract holds enough
tokens, then submits a single atomic airdrop(recipients, amounts) call and
waits for it to settle.
"""

__version__ = "0.1.0"
