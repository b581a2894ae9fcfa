"""
Organizer capability - explicit authorization token for admin calls.

Instead of a global admin flag, callers pass an OrganizerCapability into
every administrative operation (round initialization, pause, finalization).
The token is an ECDSA signature by the organizer key over a fixed grant
message bound to that key, so it cannot be produced without the key.
"""

from dataclasses import dataclass

from fairalloc.crypto import KeyPair, sha256, sign, verify, address_from_public_key

DOMAIN_ORGANIZER_GRANT = b"fairalloc.organizer"


def grant_message(public_key: bytes) -> bytes:
    """32-byte message an organizer signs to mint its capability."""
    return sha256(DOMAIN_ORGANIZER_GRANT + public_key)


@dataclass(frozen=True)
class OrganizerCapability:
    """Proof of holding the organizer key."""
    public_key: bytes
    signature: bytes

    @classmethod
    def issue(cls, keypair: KeyPair) -> "OrganizerCapability":
        signature = sign(grant_message(keypair.public_key), keypair.private_key)
        return cls(public_key=keypair.public_key, signature=signature)

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key)

    def is_valid_for(self, organizer_public_key: bytes) -> bool:
        """True iff this token was minted by `organizer_public_key`."""
        if self.public_key != organizer_public_key:
            return False
        return verify(grant_message(self.public_key), self.signature, organizer_public_key)
