"""
Capability Tests

Scopes, ownership and wallet signature verification.
"""

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from conftest import OTHER, OWNER
from vehicle_registry import capability
from vehicle_registry.capability import LOGIN_MESSAGE, recover_signer, wallet_from_signature


@pytest.fixture
def account():
    return Account.create()


def _sign(account, message):
    return Account.sign_message(encode_defunct(text=message), private_key=account.key).signature


class TestScopes:

    def test_wallet_scopes(self, owner):
        assert owner.allows(capability.SUBMIT)
        assert owner.allows(capability.PAY)
        assert not owner.allows(capability.ADMIN)
        assert not owner.is_admin

    def test_wallet_owns_only_itself(self, owner):
        assert owner.owns(OWNER)
        assert owner.owns(OWNER.upper().replace("0X", "0x"))
        assert not owner.owns(OTHER)
        assert not owner.owns(None)

    def test_admin_owns_everything(self, admin):
        assert admin.is_admin
        assert admin.allows(capability.PAY)
        assert admin.owns(OTHER)

    def test_anonymous_is_read_only(self):
        assert capability.ANONYMOUS.allows(capability.READ)
        assert not capability.ANONYMOUS.allows(capability.SUBMIT)
        assert not capability.ANONYMOUS.owns(OWNER)

    def test_system_is_admin(self):
        assert capability.SYSTEM.is_admin

    def test_wallet_address_is_checksummed(self):
        lower = "0x5aaeb6053f3e94c9b9a09f33669435e7ef1beaed"
        assert capability.for_wallet(lower).holder == "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"

    def test_invalid_address(self):
        with pytest.raises(ValueError):
            capability.for_wallet("not-an-address")


class TestSignatures:

    def test_recover_signer(self, account):
        signature = _sign(account, "hello")
        assert recover_signer("hello", signature) == account.address

    def test_valid_login_signature(self, account):
        signature = _sign(account, LOGIN_MESSAGE.format(address=account.address))
        cap = wallet_from_signature(account.address.lower(), signature)
        assert cap is not None
        assert cap.holder == account.address

    def test_signature_for_other_address(self, account):
        other = Account.create()
        signature = _sign(other, LOGIN_MESSAGE.format(address=account.address))
        assert wallet_from_signature(account.address, signature) is None

    def test_signature_over_wrong_message(self, account):
        signature = _sign(account, "something else")
        assert wallet_from_signature(account.address, signature) is None

    def test_garbage_signature(self, account):
        assert wallet_from_signature(account.address, "0x1234") is None
