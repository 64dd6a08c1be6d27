# app/x402/chains.py
"""
Supported chains for USDC payments.

The registry is built once at import from app.core.config and never mutated.
Two lookups exist on purpose:
- get_chain_config(): lenient, unknown keys fall back to the default chain.
  Used when advertising networks.
- resolve_payment_chain(): strict, unknown or non-accepted keys raise
  UnsupportedChainError. Used when accepting a payment proof.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.core.config import settings
from app.x402.errors import UnsupportedChainError

logger = logging.getLogger(__name__)

MAINNET = "mainnet"
TESTNET = "testnet"

# USDC has 6 decimals, so 1 USDC = 1,000,000 smallest units
USDC_DECIMALS = 6
USDC_UNIT = 10 ** USDC_DECIMALS


@dataclass(frozen=True)
class ChainConfig:
    """Immutable description of one supported network."""
    key: str
    label: str
    rpc_url: str
    usdc_contract: str
    chain_id: int
    explorer: str
    testnet: bool = False
    gas: str = "~$0.001"

    @property
    def network_id(self) -> str:
        """CAIP-2 identifier, as used in x402 PAYMENT-REQUIRED headers."""
        return f"eip155:{self.chain_id}"

    def summary(self) -> Dict[str, object]:
        """Public form advertised in 402 challenges."""
        return {
            "network": self.key,
            "chainId": self.chain_id,
            "label": self.label,
            "usdc_contract": self.usdc_contract,
            "explorer": self.explorer,
            "gas": self.gas,
        }


def _build_chains() -> Dict[str, ChainConfig]:
    chains = [
        ChainConfig(
            key="base",
            label="Base",
            rpc_url=str(settings.BASE_RPC_URL),
            usdc_contract="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
            chain_id=8453,
            explorer="https://basescan.org",
        ),
        ChainConfig(
            key="base-sepolia",
            label="Base Sepolia",
            rpc_url=str(settings.BASE_SEPOLIA_RPC_URL),
            usdc_contract="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
            chain_id=84532,
            explorer="https://sepolia.basescan.org",
            testnet=True,
        ),
        ChainConfig(
            key="skale",
            label="SKALE Europa",
            rpc_url=str(settings.SKALE_RPC_URL),
            usdc_contract="0x5F795bb52dAc3085f578f4877D450e2929D2F13d",
            chain_id=2046399126,
            explorer="https://elated-tan-skat.explorer.mainnet.skalenodes.com",
            gas="FREE (sFUEL)",
        ),
    ]
    return {chain.key: chain for chain in chains}


CHAINS: Dict[str, ChainConfig] = _build_chains()
CHAINS_BY_NETWORK_ID: Dict[str, ChainConfig] = {
    chain.network_id: chain for chain in CHAINS.values()
}


def get_network_mode() -> str:
    """Return the deployment mode ("mainnet" or "testnet")."""
    return MAINNET if settings.NETWORK == MAINNET else TESTNET


def get_default_chain_key(mode: Optional[str] = None) -> str:
    """Default chain for requests that do not name one."""
    mode = mode or get_network_mode()
    return "base" if mode == MAINNET else "base-sepolia"


def get_default_chain(mode: Optional[str] = None) -> ChainConfig:
    return CHAINS[get_default_chain_key(mode)]


def get_chain_config(chain_key: Optional[str]) -> ChainConfig:
    """
    Lenient lookup: unknown or missing keys resolve to the default chain.

    Args:
        chain_key: Registry key such as "base" or "skale"

    Returns:
        The matching ChainConfig, or the default chain
    """
    if chain_key and chain_key in CHAINS:
        return CHAINS[chain_key]
    return get_default_chain()


def list_accepted_chains(mode: Optional[str] = None) -> List[ChainConfig]:
    """
    List the chains a deployment accepts payments on.

    Mainnet deployments only accept production chains, testnet deployments
    only test chains, so a challenge never advertises a network inconsistent
    with the deployment.
    """
    mode = mode or get_network_mode()
    want_testnet = mode != MAINNET
    return [chain for chain in CHAINS.values() if chain.testnet == want_testnet]


def resolve_payment_chain(chain_key: Optional[str], mode: Optional[str] = None) -> ChainConfig:
    """
    Strict lookup for a chain named in a payment proof.

    Args:
        chain_key: Value of the X-Payment-Chain header (None means default)
        mode: Deployment mode, defaults to settings.NETWORK

    Returns:
        The ChainConfig the payment must be verified on

    Raises:
        UnsupportedChainError: If the key is unknown or not accepted in this mode
    """
    if chain_key is None or not chain_key.strip():
        return get_default_chain(mode)

    key = chain_key.strip()
    accepted = {chain.key: chain for chain in list_accepted_chains(mode)}
    if key not in accepted:
        raise UnsupportedChainError(
            f"Unsupported chain: {key}. Accepted: {', '.join(accepted)}"
        )
    return accepted[key]


def get_chain_by_network_id(network_id: str) -> Optional[ChainConfig]:
    """Look up a chain by CAIP-2 id (e.g. "eip155:8453")."""
    return CHAINS_BY_NETWORK_ID.get(network_id)
