"""API key management and request authentication.

Two request modes share one key store:

- Plain: ``Authorization: Bearer <key>`` or ``X-API-Key: <key>``.
- Signed: the key header plus ``X-Timestamp`` (epoch milliseconds) and
  ``X-Signature`` = hex HMAC-SHA256(secret, timestamp + body). Requests
  outside the timestamp tolerance are rejected even when the signature
  matches, which blocks replays of captured requests.

Authentication never touches roles, events or state; a successful check only
updates the key's ``lastUsed``.
"""

import hashlib
import hmac
import secrets
import string
import uuid
from collections.abc import Mapping
from dataclasses import dataclass

import structlog
from pydantic import BaseModel

from roleswitch.core.clock import Clock
from roleswitch.core.exceptions import NotFoundError
from roleswitch.db.store import RoleSwitchStore
from roleswitch.schemas.api import UpdateApiKeyRequest
from roleswitch.schemas.models import ApiKey, Permission

logger = structlog.get_logger(__name__)

KEY_ALPHABET = string.ascii_letters + string.digits
KEY_LENGTH = 32
SECRET_LENGTH = 64
MASKED_SECRET = "***HIDDEN***"

API_KEY_HEADER = "X-API-Key"
TIMESTAMP_HEADER = "X-Timestamp"
SIGNATURE_HEADER = "X-Signature"


@dataclass
class AuthResult:
    """Outcome of one authentication check."""

    ok: bool
    key: ApiKey | None = None
    reason: str | None = None
    permission_denied: bool = False


def _random_token(length: int) -> str:
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(length))


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    message = timestamp.encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class AuthService:
    def __init__(self, store: RoleSwitchStore, clock: Clock, tolerance_seconds: int = 300):
        self.store = store
        self.clock = clock
        self.tolerance_seconds = tolerance_seconds

    @property
    def enabled(self) -> bool:
        return self.store.settings.enable_authentication

    # ------------------------------------------------------------------
    # Key management
    # ------------------------------------------------------------------

    async def generate_key(self, name: str, permissions: list[Permission]) -> ApiKey:
        """Create a key. The returned copy is the only one that shows the secret."""
        api_key = ApiKey(
            id=str(uuid.uuid4()),
            name=name,
            key=_random_token(KEY_LENGTH),
            secret=_random_token(SECRET_LENGTH),
            permissions=list(dict.fromkeys(permissions)),
            created_at=self.clock.now(),
        )
        async with self.store.transaction() as data:
            data.api_keys.append(api_key)
        logger.info("api_key_created", key_id=api_key.id, permissions=[p.value for p in api_key.permissions])
        return api_key.model_copy()

    def list_keys(self) -> list[ApiKey]:
        return [self._masked(k) for k in self.store.data.api_keys]

    def get_key(self, key_id: str) -> ApiKey:
        """Unmasked lookup for internal callers such as the sync engine."""
        for api_key in self.store.data.api_keys:
            if api_key.id == key_id:
                return api_key
        raise NotFoundError("API key", key_id)

    async def update_key(self, key_id: str, request: UpdateApiKeyRequest) -> ApiKey:
        async with self.store.transaction():
            api_key = self.get_key(key_id)
            changes = request.model_dump(exclude_unset=True, exclude_none=True)
            for field, value in changes.items():
                setattr(api_key, field, value)
        logger.info("api_key_updated", key_id=key_id, fields=sorted(changes))
        return self._masked(api_key)

    async def delete_key(self, key_id: str) -> None:
        async with self.store.transaction() as data:
            self.get_key(key_id)
            data.api_keys = [k for k in data.api_keys if k.id != key_id]
        logger.info("api_key_deleted", key_id=key_id)

    @staticmethod
    def _masked(api_key: ApiKey) -> ApiKey:
        return api_key.model_copy(update={"secret": MASKED_SECRET})

    def _find_active(self, key_value: str) -> ApiKey | None:
        for api_key in self.store.data.api_keys:
            if api_key.is_active and hmac.compare_digest(api_key.key.encode(), key_value.encode()):
                return api_key
        return None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        headers: Mapping[str, str],
        required_permission: Permission | None = None,
        body: bytes = b"",
        require_signature: bool = False,
    ) -> AuthResult:
        """Check a request's credentials.

        Args:
            headers: Request headers; names are matched case-insensitively
            required_permission: Permission the route needs; admin satisfies any
            body: Raw request body, covered by the signature in signed mode
            require_signature: Reject plain-mode requests

        Returns:
            AuthResult with ``ok`` set, or the reason for rejection
        """
        if not self.enabled:
            return AuthResult(ok=True)

        lowered = {k.lower(): v for k, v in headers.items()}
        key_value = _extract_key(lowered)
        if not key_value:
            return AuthResult(
                ok=False,
                reason="API key required. Provide via Authorization: Bearer <key> or X-API-Key header",
            )

        api_key = self._find_active(key_value)
        if api_key is None:
            return AuthResult(ok=False, reason="Invalid API key")

        timestamp = lowered.get(TIMESTAMP_HEADER.lower())
        signature = lowered.get(SIGNATURE_HEADER.lower())
        if timestamp or signature:
            failure = self._verify_signed(api_key, timestamp, signature, body)
            if failure:
                logger.warning("signed_request_rejected", key_id=api_key.id, reason=failure)
                return AuthResult(ok=False, reason=failure)
        elif require_signature:
            return AuthResult(
                ok=False,
                reason="Signed request required (X-API-Key, X-Timestamp, X-Signature)",
            )

        if not api_key.allows(required_permission):
            return AuthResult(
                ok=False,
                key=self._masked(api_key),
                reason="Insufficient permissions",
                permission_denied=True,
            )

        async with self.store.transaction():
            api_key.last_used = self.clock.now()
        return AuthResult(ok=True, key=self._masked(api_key))

    def _verify_signed(
        self,
        api_key: ApiKey,
        timestamp: str | None,
        signature: str | None,
        body: bytes,
    ) -> str | None:
        if not timestamp or not signature:
            return "Missing authentication headers (X-API-Key, X-Timestamp, X-Signature)"
        try:
            sent_ms = int(timestamp)
        except ValueError:
            return "Invalid request timestamp"

        now_ms = int(self.clock.now().timestamp() * 1000)
        if abs(now_ms - sent_ms) > self.tolerance_seconds * 1000:
            return "Request timestamp outside tolerance"

        expected = compute_signature(api_key.secret, timestamp, body)
        if not hmac.compare_digest(expected.encode(), signature.lower().encode()):
            return "Invalid signature"
        return None

    def sign_request(self, api_key: ApiKey, payload: BaseModel | None = None) -> tuple[dict[str, str], bytes]:
        """Build signed headers and the exact body bytes they cover."""
        body = payload.model_dump_json(by_alias=True).encode("utf-8") if payload is not None else b""
        timestamp = str(int(self.clock.now().timestamp() * 1000))
        headers = {
            "Content-Type": "application/json",
            API_KEY_HEADER: api_key.key,
            TIMESTAMP_HEADER: timestamp,
            SIGNATURE_HEADER: compute_signature(api_key.secret, timestamp, body),
        }
        return headers, body


def _extract_key(lowered: Mapping[str, str]) -> str | None:
    authorization = lowered.get("authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer ") :].strip() or None
    return lowered.get(API_KEY_HEADER.lower()) or None
