"""
nearledger - Ledger hardware wallet signing for NEAR accounts

Delegates every private-key operation for a NEAR account to a Ledger device
running the NEAR app. The key never leaves the device.

Main Components:
- Transport: ledgerblue device handles (HID or the Speculos emulator)
- APDU channel: chunked command framing for the NEAR app and dashboard
- Transactions: Borsh encoding of actions, transactions and NEP-413 messages
- Wallet: the interactive sign in / sign and send / sign message flows

For usage, see: README.md
"""

__version__ = "0.1.0"
__author__ = "nearledger developers"

__all__ = []
