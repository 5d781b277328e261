"""
Ethereum wallet signatures (EIP-191 ``personal_sign``).

The client signs ``build_message(address, nonce, timestamp)`` with its wallet;
we recover the signer's public key from the 65-byte signature and compare the
derived address with the claimed one.
"""
import logging
import re

from Crypto.Hash import keccak
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.util import sigdecode_string

log = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
SIGNATURE_RE = re.compile(r"^(0x)?[0-9a-fA-F]{130}$")

MESSAGE_TEMPLATE = (
    "Sign this message to authenticate with MobiTickets.\n\n"
    "Address: {address}\n"
    "Nonce: {nonce}\n"
    "Timestamp: {timestamp}"
)


def keccak256(data: bytes) -> bytes:
    return keccak.new(digest_bits=256, data=data).digest()


def is_address(value: str) -> bool:
    return bool(value) and bool(ADDRESS_RE.match(value))


def build_message(address: str, nonce: str, timestamp: int) -> str:
    """The exact text a wallet must sign to log in."""
    return MESSAGE_TEMPLATE.format(address=address.lower(), nonce=nonce, timestamp=int(timestamp))


def personal_message_digest(message: str) -> bytes:
    data = message.encode("utf-8")
    prefix = f"\x19Ethereum Signed Message:\n{len(data)}".encode("utf-8")
    return keccak256(prefix + data)


def public_key_to_address(vk: VerifyingKey) -> str:
    # to_string() is the 64-byte raw x||y point
    return "0x" + keccak256(vk.to_string())[-20:].hex()


def recover_addresses(message: str, signature: str) -> set:
    """Every address that could have produced ``signature`` over ``message``."""
    if not signature or not SIGNATURE_RE.match(signature):
        return set()
    sig = bytes.fromhex(signature[2:] if signature.startswith("0x") else signature)
    digest = personal_message_digest(message)
    try:
        keys = VerifyingKey.from_public_key_recovery_with_digest(
            sig[:64], digest, curve=SECP256k1, sigdecode=sigdecode_string
        )
    except Exception as e:
        log.debug(f"Signature recovery failed: {e}")
        return set()
    return {public_key_to_address(vk) for vk in keys}


def verify_signature(address: str, message: str, signature: str) -> bool:
    """True if ``signature`` over ``message`` was made by ``address``'s key."""
    if not is_address(address):
        return False
    return address.lower() in recover_addresses(message, signature)
