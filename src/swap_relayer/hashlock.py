import enum
import hashlib, hmac, os, re

from web3 import Web3

from .errors import ValidationError

_HEX32 = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class HashScheme(str, enum.Enum):
    SHA256 = "sha256"
    KECCAK256 = "keccak256"

    @classmethod
    def parse(cls, value) -> "HashScheme":
        if isinstance(value, HashScheme):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unsupported hash scheme {value!r}", field="hash_scheme")


def _normalize_hex32(value, field: str) -> str:
    if not isinstance(value, str) or not _HEX32.match(value.strip()):
        raise ValidationError(f"{field} must be 32 bytes of hex", field=field)
    value = value.strip().lower()
    return value if value.startswith("0x") else "0x" + value


def normalize_hashlock(value) -> str:
    return _normalize_hex32(value, "hashlock")


def normalize_secret(value) -> str:
    return _normalize_hex32(value, "secret")


def generate_secret() -> str:
    """32 random bytes as 0x-prefixed hex."""
    return "0x" + os.urandom(32).hex()


def commit(secret: str, scheme=HashScheme.KECCAK256) -> str:
    """Hash the raw secret bytes with the swap's scheme; returns a normalized hashlock."""
    raw = bytes.fromhex(normalize_secret(secret)[2:])
    if HashScheme.parse(scheme) is HashScheme.SHA256:
        digest = hashlib.sha256(raw).digest()
    else:
        digest = bytes(Web3.keccak(primitive=raw))
    return "0x" + digest.hex()


def verify(secret: str, hashlock: str, scheme=HashScheme.KECCAK256) -> bool:
    """Constant-time check that secret opens hashlock. Malformed input is simply False."""
    try:
        expected = normalize_hashlock(hashlock)
        actual = commit(secret, scheme)
    except ValidationError:
        return False
    return hmac.compare_digest(actual, expected)


class HashlockService:
    """Scheme-aware facade the coordinator holds; the default scheme comes from config."""

    def __init__(self, default_scheme=HashScheme.KECCAK256):
        self.default_scheme = HashScheme.parse(default_scheme)

    def generate_secret(self) -> str:
        return generate_secret()

    def commit(self, secret: str, scheme=None) -> str:
        return commit(secret, scheme or self.default_scheme)

    def verify(self, secret: str, hashlock: str, scheme=None) -> bool:
        return verify(secret, hashlock, scheme or self.default_scheme)
