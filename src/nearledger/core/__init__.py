"""
nearledger core module

Device transport, APDU framing, canonical serialization, RPC access and the
interaction orchestrator that ties them together.
"""

__all__ = []
