"""
x402 Payment Protocol Integration Module.

This module implements pay-per-request access gated by HTTP 402, settled as
plain USDC transfers proven by transaction hash.

Key components:
- chains: supported networks and their USDC contracts
- verifier: on-chain verification of USDC transfers via JSON-RPC
- replay: anti-replay cache and durable ledger
- middleware: FastAPI middleware implementing the payment gate
- compliance: audit of third-party x402 services
- activity: JSON-lines activity log
- budget: per-agent spending caps

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
