"""
Signature envelope: ``abi.encode(bytes payload, address handler)``.

Every module-facing signature is exactly one envelope at its outermost
layer. The account unwraps one layer and forwards ``payload`` to
``handler``; a module that delegates further (for example to an ownership
module) unwraps the next layer itself.
"""

from __future__ import annotations

from dataclasses import dataclass

from smartauth.core import abi
from smartauth.core.crypto_utils import normalize_address

ENVELOPE_TYPES = ("bytes", "address")


@dataclass(frozen=True)
class SignatureEnvelope:
    payload: bytes
    handler: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", bytes(self.payload))
        object.__setattr__(self, "handler", normalize_address(self.handler))

    def encode(self) -> bytes:
        return abi.encode(ENVELOPE_TYPES, (self.payload, self.handler))

    @classmethod
    def decode(cls, data: bytes) -> "SignatureEnvelope":
        """
        Decode one envelope layer.

        Raises:
            MalformedPayloadError: if ``data`` is not a (bytes, address) encoding
        """
        payload, handler = abi.decode(ENVELOPE_TYPES, data)
        return cls(payload=payload, handler=handler)


def wrap(payload: bytes, handler: str) -> bytes:
    return SignatureEnvelope(payload, handler).encode()
