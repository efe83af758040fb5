# app/x402/__init__.py
"""
x402 content paywall module.

Buyers pay per content item on a Solana-style ledger; the gateway verifies
the payment and returns a short-lived access token plus the decrypted
content pointer.

Key components:
- pricing: Fee split and x402 payment descriptors
- verification: Ledger payment verification with bounded retries
- tokens: HMAC-signed access tokens
- crypto: AES-256-GCM encryption of content pointers
- gate: Access resolution (token, payment, or 402)
- vault / sponsor / abuse: Fee sponsorship for new wallets
- ratelimit: Per-client request ceilings
- audit: Transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
