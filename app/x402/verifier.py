# app/x402/verifier.py
"""
On-chain verification of USDC payments.

Given a transaction hash, the verifier fetches the receipt from the chain's
JSON-RPC provider and looks for an ERC-20 Transfer event that:
- was emitted by the chain's USDC contract
- credits the configured WALLET_ADDRESS
- moves at least the required amount (overpayment is fine)

Any ambiguity (RPC timeout, malformed receipt, failed transaction) is a
rejection, never an exception.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from requests.exceptions import RequestException

from app.core.config import settings
from app.x402.chains import ChainConfig, USDC_UNIT, get_chain_config

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
TX_HASH_LENGTH = 66  # "0x" + 64 hex chars
RECEIPT_STATUS_SUCCESS = "0x1"


@dataclass(frozen=True)
class VerificationOutcome:
    """Result of a payment verification."""
    accepted: bool
    observed_amount: Optional[int] = None
    payer: Optional[str] = None
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.accepted


def _rejected(reason: str, observed_amount: Optional[int] = None) -> VerificationOutcome:
    return VerificationOutcome(accepted=False, observed_amount=observed_amount, reason=reason)


def _get_transaction_receipt(rpc_url: str, tx_hash: str) -> Optional[Dict[str, Any]]:
    """
    Fetch a transaction receipt via eth_getTransactionReceipt.

    Args:
        rpc_url: JSON-RPC endpoint of the chain
        tx_hash: Normalized transaction hash

    Returns:
        The receipt dict, or None if the node does not know the transaction

    Raises:
        RequestException: If the HTTP call fails or times out
        ValueError: If the JSON-RPC response is an error or malformed
    """
    response = requests.post(
        rpc_url,
        json={
            "jsonrpc": "2.0",
            "method": "eth_getTransactionReceipt",
            "params": [tx_hash],
            "id": 1
        },
        timeout=settings.RPC_TIMEOUT_SECONDS
    )
    response.raise_for_status()

    result = response.json()
    if "error" in result:
        raise ValueError(f"RPC error: {result['error']}")

    if "result" not in result:
        raise ValueError("Invalid RPC response: missing 'result' field")

    return result["result"]


def _topic_to_address(topic: str) -> str:
    """Decode an address from a 32-byte indexed topic."""
    return "0x" + topic[-40:].lower()


def find_usdc_transfer(
    logs: List[Dict[str, Any]],
    usdc_contract: str,
    recipient: str,
    min_amount_raw: int
) -> VerificationOutcome:
    """
    Scan receipt logs for a qualifying USDC transfer.

    Args:
        logs: The receipt's "logs" array
        usdc_contract: Token contract the transfer must come from
        recipient: Address that must be credited
        min_amount_raw: Minimum amount in USDC smallest units

    Returns:
        Accepted outcome for the first qualifying transfer, otherwise a rejection
        carrying the largest amount seen to the recipient (if any)
    """
    usdc_contract = usdc_contract.lower()
    recipient = recipient.lower()
    best_amount: Optional[int] = None

    if not isinstance(logs, list):
        logs = []

    for entry in logs:
        if not isinstance(entry, dict):
            continue
        topics = entry.get("topics")
        if not isinstance(topics, list) or len(topics) < 3:
            continue
        if str(topics[0]).lower() != TRANSFER_TOPIC:
            continue

        # Transfers of any other token are ignored, even to the right wallet
        if str(entry.get("address", "")).lower() != usdc_contract:
            continue

        if not topics[1] or not topics[2]:
            continue

        try:
            to_address = _topic_to_address(topics[2])
            from_address = _topic_to_address(topics[1])
        except (TypeError, AttributeError):
            logger.warning(f"Skipping transfer log with undecodable topics: {topics!r}")
            continue
        if to_address != recipient:
            continue

        try:
            amount = int(entry.get("data") or "0x0", 16)
        except (TypeError, ValueError):
            logger.warning(f"Skipping transfer log with undecodable amount: {entry.get('data')!r}")
            continue

        if amount >= min_amount_raw:
            return VerificationOutcome(
                accepted=True,
                observed_amount=amount,
                payer=from_address,
            )

        best_amount = amount if best_amount is None else max(best_amount, amount)

    if best_amount is not None:
        return _rejected("insufficient amount", observed_amount=best_amount)
    return _rejected("no matching USDC transfer")


def verify_payment(
    tx_hash: str,
    min_amount_raw: int,
    chain_key: Optional[str] = None
) -> VerificationOutcome:
    """
    Verify that a transaction paid at least min_amount_raw USDC to our wallet.

    Args:
        tx_hash: Transaction hash supplied by the client
        min_amount_raw: Required amount in USDC smallest units
        chain_key: Chain the transaction was sent on (None = default chain)

    Returns:
        VerificationOutcome; accepted is False on any failure or ambiguity
    """
    normalized = (tx_hash or "").strip().lower()
    if len(normalized) != TX_HASH_LENGTH:
        return _rejected("invalid transaction hash length")

    recipient = settings.WALLET_ADDRESS
    if not recipient:
        logger.error("WALLET_ADDRESS not configured - cannot verify payments")
        return _rejected("recipient not configured")

    chain: ChainConfig = get_chain_config(chain_key)
    short_hash = normalized[:18]

    try:
        receipt = _get_transaction_receipt(chain.rpc_url, normalized)
    except RequestException as e:
        logger.error(f"RPC call failed on {chain.label} for tx {short_hash}...: {e}")
        return _rejected("rpc unavailable")
    except ValueError as e:
        logger.error(f"Invalid RPC response on {chain.label} for tx {short_hash}...: {e}")
        return _rejected("rpc error")

    if not isinstance(receipt, dict) or receipt.get("status") != RECEIPT_STATUS_SUCCESS:
        logger.info(f"Tx {short_hash}... on {chain.label}: failed or not found")
        return _rejected("transaction failed or not found")

    outcome = find_usdc_transfer(
        logs=receipt.get("logs") or [],
        usdc_contract=chain.usdc_contract,
        recipient=recipient,
        min_amount_raw=min_amount_raw,
    )

    if outcome.accepted:
        logger.info(
            f"USDC payment verified on {chain.label}: "
            f"{outcome.observed_amount / USDC_UNIT} USDC from {outcome.payer[:10]}..."
        )
    elif outcome.observed_amount is not None:
        logger.info(
            f"Insufficient amount on {chain.label}: {outcome.observed_amount / USDC_UNIT} USDC "
            f"(min: {min_amount_raw / USDC_UNIT})"
        )
    else:
        logger.info(f"Tx {short_hash}... on {chain.label}: payment not recognized")

    return outcome
