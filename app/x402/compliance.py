# app/x402/compliance.py
"""
Protocol compliance audit of third-party x402 services.

When a service registers, we fetch its URL ourselves and check that it
really gates access with an x402 challenge, on a chain and token we
recognize. The audit never touches the payment gate or the replay ledger.

Verdicts, in priority order:
- offline: unreachable, timed out, or 5xx
- reachable / no_x402: responds but without a decodable challenge
- wrong_chain: unknown network, or a production network with the wrong asset
- testnet: recognized test network
- mainnet_verified: production network and the expected USDC contract
"""
import json
import logging
import time
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import requests
from pydantic import BaseModel
from requests.exceptions import RequestException, Timeout
from x402.encoding import safe_base64_decode

from app.core.config import settings
from app.x402.chains import USDC_UNIT, get_chain_by_network_id

logger = logging.getLogger(__name__)

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
USER_AGENT = "x402-bazaar-verifier/2.0"
HEALTH_PATH = "/health"
SOLANA_PREFIX = "solana:"


class Verdict(str, Enum):
    """Closed set of compliance classifications."""
    OFFLINE = "offline"
    REACHABLE = "reachable"
    NO_X402 = "no_x402"
    WRONG_CHAIN = "wrong_chain"
    TESTNET = "testnet"
    MAINNET_VERIFIED = "mainnet_verified"


class DecodedChallenge(BaseModel):
    """First payment option of a candidate's PAYMENT-REQUIRED header."""
    network_id: str = ""
    asset_address: str = ""
    amount_raw: str = "0"
    pay_to_address: str = ""
    protocol_version: Optional[int] = None
    chain_label: str = "Unknown"
    is_mainnet: bool = False
    is_valid_asset: bool = False

    @property
    def amount_usdc(self) -> float:
        try:
            return int(self.amount_raw) / USDC_UNIT
        except ValueError:
            return 0.0


class ComplianceReport(BaseModel):
    reachable: bool = False
    http_status: int = 0
    latency_ms: int = 0
    challenge: Optional[DecodedChallenge] = None
    health_endpoint: bool = False
    verdict: Verdict = Verdict.OFFLINE
    details: str = ""


def decode_payment_required_header(header: str) -> Optional[DecodedChallenge]:
    """
    Decode a base64 JSON PAYMENT-REQUIRED header.

    Only the first entry of "accepts" is considered. The network is matched
    against the chain registry; solana:* networks are taken as production and
    their asset is not checked (different address format).

    Args:
        header: Raw header value

    Returns:
        DecodedChallenge, or None if the header cannot be decoded or has no
        payment option
    """
    try:
        # safe_base64_decode returns str, or None on invalid base64
        decoded_str = safe_base64_decode(header)
        if decoded_str is None:
            logger.warning("Failed to decode PAYMENT-REQUIRED header: invalid base64")
            return None
        payload = json.loads(decoded_str)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse PAYMENT-REQUIRED header JSON: {e}")
        return None
    except Exception as e:
        logger.warning(f"Failed to decode PAYMENT-REQUIRED header: {e}")
        return None

    if not isinstance(payload, dict):
        return None
    accepts = payload.get("accepts")
    if not isinstance(accepts, list) or not accepts or not isinstance(accepts[0], dict):
        return None

    option: Dict[str, Any] = accepts[0]
    network_id = str(option.get("network") or "")
    asset = str(option.get("asset") or "")
    # v1 headers call the amount maxAmountRequired
    amount = str(option.get("amount") or option.get("maxAmountRequired") or "0")
    pay_to = str(option.get("payTo") or "")

    version = payload.get("x402Version")
    if not isinstance(version, int):
        version = None

    chain = get_chain_by_network_id(network_id)
    if chain is not None:
        label = chain.label
        is_mainnet = not chain.testnet
        is_valid_asset = asset.lower() == chain.usdc_contract.lower()
    elif network_id.startswith(SOLANA_PREFIX):
        # Known gap: the SPL mint is not checked, the network label is trusted
        label = "Solana"
        is_mainnet = True
        is_valid_asset = True
    else:
        label = "Unknown"
        is_mainnet = False
        is_valid_asset = False

    return DecodedChallenge(
        network_id=network_id,
        asset_address=asset,
        amount_raw=amount,
        pay_to_address=pay_to,
        protocol_version=version,
        chain_label=label,
        is_mainnet=is_mainnet,
        is_valid_asset=is_valid_asset,
    )


def _challenge_from_response(response: requests.Response) -> Optional[DecodedChallenge]:
    if response.status_code != 402:
        return None
    header = response.headers.get(PAYMENT_REQUIRED_HEADER)
    if not header:
        return None
    return decode_payment_required_header(header)


def _probe_health(url: str) -> bool:
    """Best-effort GET of <scheme>://<host>/health on the candidate's host."""
    parts = urlsplit(url)
    health_url = f"{parts.scheme}://{parts.netloc}{HEALTH_PATH}"
    # A candidate that is itself /health does not also earn the health flag
    if health_url == url:
        return False
    try:
        response = requests.get(
            health_url,
            headers={"User-Agent": USER_AGENT},
            timeout=settings.LIVENESS_TIMEOUT_SECONDS
        )
        return 200 <= response.status_code < 400
    except RequestException:
        return False


def classify(report: ComplianceReport) -> ComplianceReport:
    """Assign verdict and details to a report whose fetch results are filled in."""
    challenge = report.challenge

    if challenge is not None:
        known = get_chain_by_network_id(challenge.network_id) is not None
        is_solana = challenge.network_id.startswith(SOLANA_PREFIX)

        if not known and not is_solana:
            report.verdict = Verdict.WRONG_CHAIN
            report.details = f"Unrecognized chain: {challenge.network_id or '(empty)'}"
        elif not challenge.is_mainnet:
            report.verdict = Verdict.TESTNET
            report.details = (
                f"Service on {challenge.chain_label} (testnet) - not usable by mainnet agents"
            )
        elif challenge.is_valid_asset:
            report.verdict = Verdict.MAINNET_VERIFIED
            report.details = f"x402 verified on {challenge.chain_label}"
        else:
            report.verdict = Verdict.WRONG_CHAIN
            report.details = f"Unknown USDC contract on {challenge.network_id}"
    elif report.reachable:
        if report.http_status == 402:
            report.verdict = Verdict.NO_X402
            report.details = "Returns 402 but PAYMENT-REQUIRED header is missing or malformed"
        else:
            report.verdict = Verdict.REACHABLE
            report.details = (
                f"URL responds with HTTP {report.http_status} (no x402 payment gate detected)"
            )
    else:
        report.verdict = Verdict.OFFLINE
        report.details = report.details or f"HTTP {report.http_status}"

    return report


def audit_service(url: str) -> ComplianceReport:
    """
    Audit a candidate service URL for x402 compliance.

    Args:
        url: The service URL to check

    Returns:
        ComplianceReport with reachability, decoded challenge and verdict
    """
    report = ComplianceReport()
    timeout = settings.AUDIT_TIMEOUT_SECONDS
    start = time.monotonic()

    try:
        response = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
    except Timeout:
        report.latency_ms = int((time.monotonic() - start) * 1000)
        report.details = f"Timeout ({timeout:g}s)"
        logger.info(f"Audit of {url}: offline ({report.details})")
        return report
    except RequestException as e:
        report.latency_ms = int((time.monotonic() - start) * 1000)
        report.details = str(e)
        logger.info(f"Audit of {url}: offline ({e})")
        return report

    report.latency_ms = int((time.monotonic() - start) * 1000)
    report.http_status = response.status_code
    report.reachable = 200 <= response.status_code < 500
    report.challenge = _challenge_from_response(response)

    # Some services only gate non-idempotent methods
    if report.challenge is None:
        try:
            post_response = requests.post(
                url,
                json={"test": True},
                headers={"User-Agent": USER_AGENT},
                timeout=timeout
            )
            report.challenge = _challenge_from_response(post_response)
        except RequestException as e:
            logger.debug(f"Audit of {url}: POST retry failed: {e}")

    report.health_endpoint = _probe_health(url)

    classify(report)
    logger.info(f"Audit of {url}: {report.verdict.value} ({report.details})")
    return report
