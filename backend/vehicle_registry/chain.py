# vehicle_registry/chain.py
"""
Chain Gateway: the boundary to the vehicle registry contract.

The contract is treated as an opaque ledger with two entry points: a payable
registerVehicle call and a getPaymentStatus view. Every failure is classified
into a Result outcome so the coordinator can tell an ambiguous submission
(re-query, never resubmit) from a definite rejection.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import requests
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from .results import Outcome, Result
from .schemas import VehicleAttributes

log = logging.getLogger("chain")

# used when no compiled artifact is configured
REGISTRY_ABI = [
    {
        "type": "function",
        "name": "registerVehicle",
        "stateMutability": "payable",
        "inputs": [
            {"name": "inspectionId", "type": "string"},
            {"name": "registrationNumber", "type": "string"},
            {"name": "vehicleDetails", "type": "string"},
            {"name": "owner", "type": "address"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getPaymentStatus",
        "stateMutability": "view",
        "inputs": [{"name": "inspectionId", "type": "string"}],
        "outputs": [
            {"name": "registrationPaid", "type": "bool"},
            {"name": "amountPaid", "type": "uint256"},
            {"name": "owner", "type": "address"},
            {"name": "registrationNumber", "type": "string"},
        ],
    },
    {
        "type": "event",
        "name": "VehicleRegistered",
        "anonymous": False,
        "inputs": [
            {"name": "inspectionId", "type": "string", "indexed": False},
            {"name": "registrationNumber", "type": "string", "indexed": False},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "amountPaid", "type": "uint256", "indexed": False},
        ],
    },
]

USER_REJECTED_CODE = 4001
ZERO_ADDRESS = "0x" + "00" * 20


@dataclass(frozen=True)
class ChainPaymentRecord:
    identity: str
    amount_paid: int
    paid: bool
    tx_reference: Optional[str] = None
    owner: Optional[str] = None
    registration_number: Optional[str] = None


def load_abi(abi_path: Optional[str]) -> list:
    if not abi_path:
        return REGISTRY_ABI
    with open(abi_path) as f:
        artifact = json.load(f)
    return artifact.get("abi", artifact) if isinstance(artifact, dict) else artifact


def to_tx_reference(value) -> str:
    """0x-prefixed hex for a tx hash given as bytes, HexBytes or hex string."""
    if isinstance(value, str) and not value.startswith("0x"):
        value = "0x" + value
    return Web3.to_hex(HexBytes(value))


def _rpc_error_code(exc: Exception) -> Optional[int]:
    response = getattr(exc, "rpc_response", None)
    if isinstance(response, dict) and isinstance(response.get("error"), dict):
        return response["error"].get("code")
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0].get("code")
    return None


def classify_chain_error(exc: Exception) -> Outcome:
    """
    Map a web3 failure onto the chain error classes.

    Unknown failures are treated as ambiguous: the transaction may or may not
    have landed, so the caller has to re-query rather than resubmit.
    """
    message = str(exc).lower()
    if isinstance(exc, ContractLogicError):
        if "already registered" in message:
            return Outcome.CHAIN_ALREADY_REGISTERED
        return Outcome.CHAIN_REJECTED
    if _rpc_error_code(exc) == USER_REJECTED_CODE or "user rejected" in message or "user denied" in message:
        return Outcome.CHAIN_REJECTED
    if isinstance(exc, (TimeExhausted, requests.exceptions.RequestException)):
        return Outcome.CHAIN_RETRYABLE
    log.warning("Unrecognised chain failure treated as retryable: %r", exc)
    return Outcome.CHAIN_RETRYABLE


@dataclass(frozen=True)
class SubmissionFailure:
    """Value carried by a failed submit_registration result."""

    broadcast: bool
    tx_reference: Optional[str] = None


class ChainGateway(ABC):
    @abstractmethod
    def submit_registration(
        self,
        identity: str,
        attrs: VehicleAttributes,
        registration_number: str,
        amount: int,
        owner: str,
    ) -> Result:
        """Pay and register; OK carries the tx reference."""

    @abstractmethod
    def get_payment_status(self, identity: str) -> Result:
        """OK carries a ChainPaymentRecord; NOT_FOUND_ON_CHAIN when nothing was recorded."""


class Web3ChainGateway(ChainGateway):
    def __init__(
        self,
        w3: Web3,
        contract,
        submitter_private_key: str,
        wei_per_fee_unit: int,
        receipt_timeout: int = 120,
        from_block: int = 0,
        gas: int = 800000,
    ):
        self.w3 = w3
        self.contract = contract
        self.submitter_private_key = submitter_private_key
        self.wei_per_fee_unit = wei_per_fee_unit
        self.receipt_timeout = receipt_timeout
        self.from_block = from_block
        self.gas = gas

    @classmethod
    def from_settings(cls, settings) -> "Web3ChainGateway":
        if not settings.CONTRACT_ADDRESS or not settings.SUBMITTER_PK:
            raise ValueError("CONTRACT_ADDRESS and SUBMITTER_PK must be configured in .env")
        w3 = Web3(Web3.HTTPProvider(settings.RPC_URL))
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(settings.CONTRACT_ADDRESS),
            abi=load_abi(settings.ABI_PATH),
        )
        return cls(
            w3,
            contract,
            settings.SUBMITTER_PK,
            settings.WEI_PER_FEE_UNIT,
            receipt_timeout=settings.CHAIN_RECEIPT_TIMEOUT,
            from_block=settings.REGISTRY_FROM_BLOCK,
        )

    def submit_registration(self, identity, attrs, registration_number, amount, owner) -> Result:
        acct = self.w3.eth.account.from_key(self.submitter_private_key)
        value = int(amount) * self.wei_per_fee_unit
        details = json.dumps({
            "make": attrs.make,
            "model": attrs.model,
            "year": attrs.manufacturing_year,
            "engineNumber": attrs.engine_number,
            "chassisNumber": attrs.chassis_number,
            "vehicleType": attrs.vehicle_type,
            "registrationNumber": registration_number,
        }, sort_keys=True)
        fn = self.contract.functions.registerVehicle(
            identity,
            registration_number,
            details,
            Web3.to_checksum_address(owner),
        )

        try:
            # dry run first so revert reasons surface before anything is broadcast
            fn.call({"from": acct.address, "value": value})
            tx = fn.build_transaction({
                "from": acct.address,
                "value": value,
                "nonce": self.w3.eth.get_transaction_count(acct.address),
                "gas": self.gas,
                "gasPrice": self.w3.eth.gas_price,
            })
            signed = self.w3.eth.account.sign_transaction(tx, private_key=self.submitter_private_key)
        except Exception as e:
            return self._failed(identity, "preflight", e, broadcast=False)

        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            # the node may have accepted the tx before the connection dropped
            return self._failed(identity, "broadcast", e, broadcast=True)

        tx_ref = to_tx_reference(tx_hash)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except Exception as e:
            return self._failed(identity, "receipt", e, broadcast=True, tx_ref=tx_ref)

        if receipt["status"] != 1:
            log.warning("Registration tx %s for %s reverted", tx_ref, identity)
            return Result.failure(
                Outcome.CHAIN_REJECTED,
                f"transaction {tx_ref} reverted",
                SubmissionFailure(broadcast=True, tx_reference=tx_ref),
            )

        log.info("Registration tx %s for %s mined in block %s", tx_ref, identity, receipt.get("blockNumber"))
        return Result.success(tx_ref)

    @staticmethod
    def _failed(identity: str, stage: str, exc: Exception, broadcast: bool, tx_ref: Optional[str] = None) -> Result:
        outcome = classify_chain_error(exc)
        log.warning("Registration %s for %s failed (%s): %s", stage, identity, outcome.value, exc)
        return Result.failure(outcome, str(exc), SubmissionFailure(broadcast=broadcast, tx_reference=tx_ref))

    def get_payment_status(self, identity: str) -> Result:
        try:
            paid, amount_wei, owner, reg_number = self.contract.functions.getPaymentStatus(identity).call()
        except ContractLogicError as e:
            # the registry reverts for identities it has never seen
            return Result.failure(Outcome.NOT_FOUND_ON_CHAIN, str(e))
        except Exception as e:
            log.warning("Payment status query for %s failed: %s", identity, e)
            return Result.failure(classify_chain_error(e), str(e))

        if not paid and not amount_wei and (not owner or owner == ZERO_ADDRESS):
            return Result.failure(Outcome.NOT_FOUND_ON_CHAIN, f"{identity} has no registration on chain")

        try:
            tx_ref = self._find_registration_tx(identity)
        except Exception as e:
            log.warning("Event lookup for %s failed: %s", identity, e)
            return Result.failure(classify_chain_error(e), str(e))

        return Result.success(ChainPaymentRecord(
            identity=identity,
            amount_paid=int(amount_wei) // self.wei_per_fee_unit,
            paid=bool(paid),
            tx_reference=tx_ref,
            owner=Web3.to_checksum_address(owner) if owner and owner != ZERO_ADDRESS else None,
            registration_number=reg_number or None,
        ))

    def _find_registration_tx(self, identity: str) -> Optional[str]:
        logs = self.contract.events.VehicleRegistered().get_logs(
            from_block=self.from_block,
            argument_filters={"inspectionId": identity},
        )
        if not logs:
            return None
        return to_tx_reference(logs[-1]["transactionHash"])
