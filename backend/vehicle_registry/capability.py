# vehicle_registry/capability.py
"""
Caller capabilities.

Every coordinator call receives an explicit Capability instead of consulting
ambient session state. A wallet capability may act only on records owned by
that wallet; the admin capability may act on any record.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

READ = "inspection:read"
SUBMIT = "inspection:submit"
PAY = "payment:submit"
CONFIRM = "payment:confirm"
ADMIN = "admin"

USER_SCOPES = frozenset({READ, SUBMIT, PAY, CONFIRM})

LOGIN_MESSAGE = "Sign in to the vehicle registration service as {address}"


@dataclass(frozen=True)
class Capability:
    holder: str
    scopes: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return ADMIN in self.scopes

    def allows(self, scope: str) -> bool:
        return self.is_admin or scope in self.scopes

    def owns(self, wallet_identity: str) -> bool:
        return self.is_admin or self.holder.lower() == (wallet_identity or "").lower()


ANONYMOUS = Capability("anonymous", frozenset({READ}))
SYSTEM = Capability("system", frozenset({ADMIN}))


def for_wallet(address: str) -> Capability:
    return Capability(Web3.to_checksum_address(address), USER_SCOPES)


def for_admin(name: str = "admin") -> Capability:
    return Capability(name, frozenset({ADMIN}))


def recover_signer(message: str, signature: str) -> str:
    """Address that produced a personal_sign signature over message."""
    msg = encode_defunct(text=message)
    signer = Account.recover_message(msg, signature=signature)
    return Web3.to_checksum_address(signer)


def wallet_from_signature(address: str, signature: str) -> Optional[Capability]:
    """Capability for address if signature proves control of it, else None."""
    checksum = Web3.to_checksum_address(address)
    try:
        signer = recover_signer(LOGIN_MESSAGE.format(address=checksum), signature)
    except Exception:
        # malformed or truncated signature
        return None
    if signer != checksum:
        return None
    return for_wallet(checksum)
