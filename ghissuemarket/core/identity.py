"""
Identity Resolver - Stamp actions with the node's public key.

The key is queried from the payment backend on every call. It is never
cached: the node identity may change between runs (key rotation).
"""

from ghissuemarket.core.errors import BackendCallError, IdentityError
from ghissuemarket.core.settlement.backend import PaymentBackend
from ghissuemarket.utils.logger import get_logger
from ghissuemarket.utils.validation import validate_public_key

logger = get_logger("identity")


class IdentityResolver:
    def __init__(self, backend: PaymentBackend):
        self.backend = backend

    def resolve_public_key(self, actor_role: str) -> str:
        """
        Query the backend for the acting node's public key.

        Args:
            actor_role: Command or role asking (used in error messages)

        Raises:
            IdentityError: backend unreachable, malformed output, or a
                key that is not a compressed public key
        """
        try:
            pubkey = self.backend.get_identity()
        except BackendCallError as e:
            raise IdentityError(f"Failed to retrieve public key for {actor_role}: {e}") from e

        if not pubkey:
            raise IdentityError(f"Backend returned no public key for {actor_role}")

        valid, err = validate_public_key(pubkey, "identity_pubkey")
        if not valid:
            raise IdentityError(f"Malformed public key for {actor_role}: {err}")

        logger.debug(f"Resolved {actor_role} identity {pubkey[:16]}...")
        return pubkey
