"""
Token issuance for the drip faucet.

- IssuanceClient is the boundary the settlement scheduler talks to:
  issue(address, amount) returns a transaction id or raises IssuanceError.
- Erc20IssuanceClient sends ERC20 `transfer` calls from the faucet treasury
  with web3.py. Amounts are whole tokens; they are scaled by the token's
  decimals before signing.
- DryRunIssuanceClient returns synthetic ids for local runs without a chain.

Gas is paid in the chain's native token by the treasury account.
"""

import asyncio
import json
import logging
import secrets
import threading
from typing import Any, Optional

from web3 import Web3

from drip_config import FaucetConfig

logger = logging.getLogger(__name__)

# Minimal ERC20 ABI: transfer + decimals
ERC20_ABI = json.loads("""
[
  {
    "constant": false,
    "inputs": [
      {"name": "_to", "type": "address"},
      {"name": "_value", "type": "uint256"}
    ],
    "name": "transfer",
    "outputs": [{"name": "", "type": "bool"}],
    "type": "function"
  },
  {
    "constant": true,
    "inputs": [],
    "name": "decimals",
    "outputs": [{"name": "", "type": "uint8"}],
    "type": "function"
  }
]
""")

MIN_GAS = 21000
PRIORITY_FEE_GWEI = 1


class IssuanceError(Exception):
    """A transfer could not be issued. The cause is opaque to settlement."""


class IssuanceClient:
    async def issue(self, address: str, amount: int) -> str:
        raise NotImplementedError


class DryRunIssuanceClient(IssuanceClient):
    def __init__(self):
        self.issued: list[tuple[str, int, str]] = []

    async def issue(self, address: str, amount: int) -> str:
        tx_hash = "0x" + secrets.token_hex(32)
        self.issued.append((address, amount, tx_hash))
        logger.info(f"[dry-run] would send amount={amount} to={address} tx={tx_hash}")
        return tx_hash


def to_base_units(amount: int, decimals: int) -> int:
    if amount <= 0:
        raise IssuanceError(f"amount must be > 0 (got {amount})")
    return int(amount) * (10 ** decimals)


class Erc20IssuanceClient(IssuanceClient):
    def __init__(
        self,
        w3: Any,
        token: Any,
        treasury: str,
        private_key: str,
        chain_id: int,
        decimals: int,
        gas_mult: float = 1.15,
    ):
        self.w3 = w3
        self.token = token
        self.treasury = treasury
        self.private_key = private_key
        self.chain_id = chain_id
        self.decimals = decimals
        self.gas_mult = gas_mult
        # Held from the nonce read to the broadcast. A send stranded by a
        # settlement timeout keeps it, so the next send waits its turn.
        self._send_lock = threading.Lock()

    @classmethod
    def connect(cls, cfg: FaucetConfig) -> "Erc20IssuanceClient":
        """Open the RPC connection and resolve treasury, chain id and decimals."""
        w3 = Web3(Web3.HTTPProvider(cfg.provider_url, request_kwargs={"timeout": 20}))
        if not w3.is_connected():
            raise SystemExit(f"[fatal] RPC not reachable: {cfg.provider_url}")

        try:
            acct = w3.eth.account.from_key(cfg.private_key)
        except Exception as e:
            raise SystemExit(f"[fatal] invalid FAUCET_PRIVATE_KEY: {e}")

        try:
            token_addr = Web3.to_checksum_address(cfg.token_contract)
        except Exception:
            raise SystemExit(f"[fatal] invalid TOKEN_CONTRACT_ADDRESS: {cfg.token_contract}")
        token = w3.eth.contract(address=token_addr, abi=ERC20_ABI)

        chain_id = cfg.chain_id if cfg.chain_id is not None else int(w3.eth.chain_id)

        # Prefer the contract's own decimals when the call works
        decimals = cfg.token_decimals
        try:
            chain_dec = int(token.functions.decimals().call())
            if 0 <= chain_dec <= 36:
                decimals = chain_dec
        except Exception as e:
            logger.warning(f"[issuer] decimals() call failed, using {decimals}: {e}")

        logger.info(
            f"[issuer] connected rpc={cfg.provider_url} chain_id={chain_id} "
            f"token={token_addr} treasury={acct.address} decimals={decimals}"
        )
        return cls(
            w3=w3,
            token=token,
            treasury=acct.address,
            private_key=cfg.private_key,
            chain_id=chain_id,
            decimals=decimals,
            gas_mult=cfg.gas_mult,
        )

    async def issue(self, address: str, amount: int) -> str:
        try:
            return await asyncio.to_thread(self._send_transfer, address, amount)
        except IssuanceError:
            raise
        except Exception as e:
            raise IssuanceError(f"send error: {e!r}") from e

    def _send_transfer(self, address: str, amount: int) -> str:
        with self._send_lock:
            return self._send_transfer_locked(address, amount)

    def _send_transfer_locked(self, address: str, amount: int) -> str:
        try:
            to_addr = Web3.to_checksum_address(address)
        except Exception:
            raise IssuanceError(f"invalid to_address: {address}")
        value = to_base_units(amount, self.decimals)

        nonce = self.w3.eth.get_transaction_count(self.treasury, "pending")
        tx = self.token.functions.transfer(to_addr, value).build_transaction({
            "chainId": self.chain_id,
            "from": self.treasury,
            "nonce": nonce,
        })

        est = self.w3.eth.estimate_gas(tx)
        tx["gas"] = max(MIN_GAS, int(est * self.gas_mult))
        self._apply_fees(tx)

        signed = self.w3.eth.account.sign_transaction(tx, private_key=self.private_key)
        tx_hash = _hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))
        logger.info(f"[issuer] broadcast to={to_addr} nonce={nonce} tx={tx_hash}")
        return tx_hash

    def _apply_fees(self, tx: dict) -> None:
        # EIP-1559 when the chain reports a base fee, legacy gasPrice otherwise
        base_fee: Optional[int] = None
        try:
            latest = self.w3.eth.get_block("latest")
            base_fee = latest.get("baseFeePerGas")
        except Exception as e:
            logger.debug(f"[issuer] latest block lookup failed, falling back to gasPrice: {e}")

        tx.pop("gasPrice", None)
        if base_fee is not None:
            prio = self.w3.to_wei(PRIORITY_FEE_GWEI, "gwei")
            tx["maxPriorityFeePerGas"] = prio
            tx["maxFeePerGas"] = int(base_fee * 2 + prio)
        else:
            tx.pop("maxPriorityFeePerGas", None)
            tx.pop("maxFeePerGas", None)
            tx["gasPrice"] = self.w3.eth.gas_price


def _hex(tx_hash: Any) -> str:
    h = tx_hash.hex() if hasattr(tx_hash, "hex") else str(tx_hash)
    return h if h.startswith("0x") else "0x" + h


def build_issuer(cfg: FaucetConfig) -> IssuanceClient:
    if cfg.dry_run:
        logger.warning("[issuer] FAUCET_DRY_RUN=1: no tokens will be sent")
        return DryRunIssuanceClient()
    return Erc20IssuanceClient.connect(cfg)
