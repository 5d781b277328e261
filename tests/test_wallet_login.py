"""Wallet (EIP-191 personal_sign) login."""
import hashlib
import secrets
import time

import pytest
from ecdsa import SECP256k1, SigningKey
from ecdsa.util import sigencode_string
from sqlmodel import select

from services.auth.service import AuthService
from services.auth.wallet import (
    build_message,
    keccak256,
    personal_message_digest,
    public_key_to_address,
    verify_signature,
)
from services.db.connection import session_scope
from services.db.models import User, UserRole
from services.errors import (
    InvalidMessageFormat,
    InvalidSignature,
    ReplayDetected,
    SignatureExpired,
)


def new_wallet():
    key = SigningKey.generate(curve=SECP256k1)
    return key, public_key_to_address(key.get_verifying_key())


def sign(key: SigningKey, message: str) -> str:
    digest = personal_message_digest(message)
    rs = key.sign_digest_deterministic(digest, hashfunc=hashlib.sha256, sigencode=sigencode_string)
    # wallets append the recovery id as v = 27/28; recovery here tries both candidates
    return "0x" + (rs + bytes([27])).hex()


def login(address, signature, message, nonce, timestamp):
    with session_scope() as session:
        return AuthService(session).wallet_login(address, signature, message, nonce, timestamp)


def signed_login_args(key, address, nonce=None, timestamp=None):
    nonce = nonce or secrets.token_hex(16)
    timestamp = int(time.time()) if timestamp is None else timestamp
    message = build_message(address, nonce, timestamp)
    return address, sign(key, message), message, nonce, timestamp


def test_keccak256_known_vector():
    assert keccak256(b"").hex() == "c5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"


def test_message_format():
    message = build_message("0xABCDEF0123456789abcdef0123456789ABCDEF01", "n0nce", 1767225600)
    assert message == (
        "Sign this message to authenticate with MobiTickets.\n\n"
        "Address: 0xabcdef0123456789abcdef0123456789abcdef01\n"
        "Nonce: n0nce\n"
        "Timestamp: 1767225600"
    )


def test_verify_signature():
    key, address = new_wallet()
    _, other = new_wallet()
    message = build_message(address, "nonce-1", 1767225600)
    signature = sign(key, message)

    assert verify_signature(address, message, signature)
    assert verify_signature(address.upper().replace("0X", "0x"), message, signature)
    assert not verify_signature(other, message, signature)
    assert not verify_signature(address, message + "!", signature)
    assert not verify_signature(address, message, "0xdeadbeef")


def test_first_login_creates_attendee(store):
    key, address = new_wallet()
    user, user_session = login(*signed_login_args(key, address))

    assert user.wallet_address == address.lower()
    assert user.email == f"{address.lower()}@wallet"
    assert user.role == UserRole.ATTENDEE
    assert user_session.provider == "wallet"

    again, _ = login(*signed_login_args(key, address))
    assert again.user_id == user.user_id
    with session_scope() as session:
        assert len(session.exec(select(User)).all()) == 1


def test_replayed_nonce_rejected(store):
    key, address = new_wallet()
    args = signed_login_args(key, address)
    login(*args)
    with pytest.raises(ReplayDetected):
        login(*args)


def test_stale_timestamp_rejected(store):
    key, address = new_wallet()
    with pytest.raises(SignatureExpired):
        login(*signed_login_args(key, address, timestamp=int(time.time()) - 400))


def test_message_must_match_exactly(store):
    key, address = new_wallet()
    _, _, message, nonce, timestamp = signed_login_args(key, address)
    tampered = message.replace("MobiTickets", "SomethingElse")
    with pytest.raises(InvalidMessageFormat):
        login(address, sign(key, tampered), tampered, nonce, timestamp)


def test_bad_signature_does_not_spend_nonce(store):
    key, address = new_wallet()
    impostor, _ = new_wallet()
    nonce, timestamp = secrets.token_hex(16), int(time.time())
    message = build_message(address, nonce, timestamp)

    with pytest.raises(InvalidSignature):
        login(address, sign(impostor, message), message, nonce, timestamp)

    user, _ = login(address, sign(key, message), message, nonce, timestamp)
    assert user.wallet_address == address.lower()
