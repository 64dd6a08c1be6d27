# app/x402/middleware.py
"""
FastAPI middleware for x402 payment verification.

This module provides HTTP middleware that:
1. Intercepts requests to protected endpoints
2. Returns 402 Payment Required with a challenge when no proof is attached
3. Validates the X-Payment-TxHash / X-Payment-Chain proof headers
4. Blocks replayed transaction hashes
5. Verifies the USDC transfer on-chain
6. Records the hash as consumed, then lets the request through

Payments are plain USDC transfers to WALLET_ADDRESS; the proof is the
transaction hash, checked against the chain's JSON-RPC provider.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.x402.activity import ActivityType, log_activity
from app.x402.budget import BudgetManager, get_budget_headers, get_budget_manager
from app.x402.chains import (
    USDC_UNIT,
    ChainConfig,
    get_default_chain,
    get_default_chain_key,
    list_accepted_chains,
    resolve_payment_chain,
)
from app.x402.errors import (
    DependencyUnavailable,
    InvalidTransactionHash,
    PaymentRejected,
    X402Error,
)
from app.x402.replay import ReplayGuard, get_replay_guard
from app.x402.verifier import VerificationOutcome, verify_payment

logger = logging.getLogger(__name__)

# Proof headers
TX_HASH_HEADER = "X-Payment-TxHash"
CHAIN_HEADER = "X-Payment-Chain"
AGENT_WALLET_HEADER = "X-Agent-Wallet"

TX_HASH_REGEX = re.compile(r"^0x[a-fA-F0-9]{64}$")
CURRENCY = "USDC"


@dataclass(frozen=True)
class PaymentTerms:
    """Price and label of one protected operation."""
    min_amount_raw: int
    action: str

    @property
    def display_amount(self) -> float:
        """Human amount in USDC (e.g. 50000 -> 0.05)."""
        return float(Decimal(self.min_amount_raw) / Decimal(USDC_UNIT))


@dataclass(frozen=True)
class PaymentProof:
    tx_hash: str
    chain: ChainConfig


# Protected endpoints configuration: (method, path, terms)
PROTECTED_ENDPOINTS: List[Tuple[str, str, PaymentTerms]] = [
    ("POST", "/api/v1/register", PaymentTerms(1_000_000, "Register a service")),
]


def get_payment_terms(
    method: str,
    path: str,
    protected_endpoints: Optional[List[Tuple[str, str, PaymentTerms]]] = None
) -> Optional[PaymentTerms]:
    """Return the terms for a protected endpoint, or None if it is free."""
    endpoints = PROTECTED_ENDPOINTS if protected_endpoints is None else protected_endpoints
    for protected_method, protected_path, terms in endpoints:
        if method == protected_method and path.rstrip("/") == protected_path.rstrip("/"):
            return terms
    return None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def create_payment_challenge(terms: PaymentTerms, recipient: str) -> dict:
    """
    Build the payment_details document for a 402 response.

    Args:
        terms: Price and label of the operation
        recipient: Address the USDC must be sent to

    Returns:
        Dict with amount, currency, recipient, default network and every
        network the deployment accepts
    """
    default_chain = get_default_chain()
    return {
        "amount": terms.display_amount,
        "currency": CURRENCY,
        "network": get_default_chain_key(),
        "chainId": default_chain.chain_id,
        "networks": [chain.summary() for chain in list_accepted_chains()],
        "recipient": recipient,
        "accepted": [CURRENCY],
        "action": terms.action,
    }


def create_402_response(terms: PaymentTerms, recipient: str) -> JSONResponse:
    """Create an HTTP 402 Payment Required challenge."""
    return JSONResponse(
        status_code=402,
        content={
            "error": "Payment Required",
            "message": (
                f"This action costs {terms.display_amount} {CURRENCY}. Send payment then "
                f"provide the transaction hash in the {TX_HASH_HEADER} header."
            ),
            "payment_details": create_payment_challenge(terms, recipient),
        }
    )


def create_error_response(error: X402Error) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def parse_payment_proof(tx_hash: str, chain_key: Optional[str]) -> PaymentProof:
    """
    Validate the proof headers.

    Raises:
        InvalidTransactionHash: If tx_hash is not a 0x-prefixed 32-byte hex hash
        UnsupportedChainError: If chain_key is unknown or not accepted here
    """
    tx_hash = tx_hash.strip()
    if not TX_HASH_REGEX.match(tx_hash):
        raise InvalidTransactionHash("Expected 0x followed by 64 hex characters")
    chain = resolve_payment_chain(chain_key)
    return PaymentProof(tx_hash=tx_hash.lower(), chain=chain)


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment gate for FastAPI.

    For each protected endpoint:
    - no proof: 402 with payment_details
    - malformed hash or unsupported chain: 400
    - replay check unavailable: 503 (fail closed)
    - hash already used: 402
    - transfer not found or insufficient: 402
    - verified and claimed: request is processed

    Unprotected requests pass through unchanged.
    """

    def __init__(
        self,
        app,
        protected_endpoints: Optional[List[Tuple[str, str, PaymentTerms]]] = None,
        replay_guard: Optional[ReplayGuard] = None,
        verifier: Optional[Callable[[str, int, Optional[str]], VerificationOutcome]] = None,
        budget_manager: Optional[BudgetManager] = None,
    ):
        super().__init__(app)
        self._protected_endpoints = protected_endpoints
        self._replay_guard = replay_guard
        self._verifier = verifier or verify_payment
        self._budget_manager = budget_manager

    @property
    def replay_guard(self) -> ReplayGuard:
        """Lazy initialization of the replay guard (opens the ledger)."""
        if self._replay_guard is None:
            self._replay_guard = get_replay_guard()
        return self._replay_guard

    @property
    def budget_manager(self) -> BudgetManager:
        if self._budget_manager is None:
            self._budget_manager = get_budget_manager()
        return self._budget_manager

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        terms = get_payment_terms(request.method, request.url.path, self._protected_endpoints)
        if terms is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        recipient = settings.WALLET_ADDRESS
        if not recipient:
            logger.error("x402: WALLET_ADDRESS not configured, refusing protected request")
            return create_error_response(
                DependencyUnavailable("Payment recipient is not configured")
            )

        agent_wallet = request.headers.get(AGENT_WALLET_HEADER)
        if agent_wallet and settings.BUDGET_ENABLED:
            allowed, reason, budget = self.budget_manager.check_budget(agent_wallet, terms.display_amount)
            if not allowed:
                return JSONResponse(
                    status_code=403,
                    content={"error": "Budget Exceeded", "message": reason, "budget": budget}
                )

        tx_hash = request.headers.get(TX_HASH_HEADER)
        if not tx_hash:
            logger.info(f"x402: 402 -> {request.method} {request.url.path} ({terms.action}) for {client_ip}")
            log_activity(ActivityType.PAYMENT_REQUIRED, f"{terms.action} - payment requested")
            return create_402_response(terms, recipient)

        try:
            proof = parse_payment_proof(tx_hash, request.headers.get(CHAIN_HEADER))
        except X402Error as e:
            logger.warning(f"x402: Rejected proof from {client_ip}: {e.message}")
            return create_error_response(e)

        short_hash = proof.tx_hash[:18]

        try:
            guard = self.replay_guard
            already_used = await run_in_threadpool(guard.is_consumed, proof.tx_hash)
        except DependencyUnavailable as e:
            logger.error(f"x402: Anti-replay check error: {e.message}")
            return create_error_response(
                DependencyUnavailable("Payment verification system error. Please retry.")
            )

        if already_used:
            return self._replay_blocked(terms, proof)

        try:
            outcome = await run_in_threadpool(
                self._verifier, proof.tx_hash, terms.min_amount_raw, proof.chain.key
            )
        except Exception as e:
            # A verification that cannot complete is a non-payment
            logger.error(f"x402: Verification error for tx {short_hash}... on {proof.chain.key}: {e}")
            return create_error_response(
                PaymentRejected("Invalid transaction or insufficient payment.")
            )

        if not outcome.accepted:
            logger.warning(f"x402: Payment rejected for tx {short_hash}... on {proof.chain.key}: {outcome.reason}")
            return create_error_response(
                PaymentRejected("Invalid transaction or insufficient payment.")
            )

        # Shielded: a client disconnect must not abandon the ledger write
        try:
            claimed = await asyncio.shield(
                run_in_threadpool(guard.consume, proof.tx_hash, proof.chain.key, terms.action)
            )
        except DependencyUnavailable as e:
            logger.error(f"x402: Failed to record tx {short_hash}...: {e.message}")
            return create_error_response(
                DependencyUnavailable("Payment verification system error. Please retry.")
            )

        if not claimed:
            return self._replay_blocked(terms, proof)

        log_activity(
            ActivityType.PAYMENT,
            f"{terms.action} - {terms.display_amount} {CURRENCY} verified on {proof.chain.label}",
            amount=terms.display_amount,
            tx_hash=proof.tx_hash,
        )
        logger.info(f"x402: Payment accepted for tx {short_hash}... on {proof.chain.label} ({terms.action})")

        response = await call_next(request)

        if agent_wallet and settings.BUDGET_ENABLED:
            spending = self.budget_manager.record_spending(agent_wallet, terms.display_amount)
            if spending is not None:
                for header, value in get_budget_headers(spending).items():
                    response.headers[header] = value

        return response

    def _replay_blocked(self, terms: PaymentTerms, proof: PaymentProof) -> JSONResponse:
        logger.warning(f"x402: Replay blocked for tx {proof.tx_hash[:18]}... on {proof.chain.key}")
        log_activity(
            ActivityType.REPLAY_BLOCKED,
            f"{terms.action} - replayed transaction",
            tx_hash=proof.tx_hash,
        )
        return create_error_response(
            PaymentRejected("This transaction has already been used. Please send a new payment.")
        )
