"""
Credential Issuer - short-lived bearer tokens for the GitHub App.

Two kinds of token:
1. App token: an RS256 JWT signed with the app private key (iss = app id).
   Only good for /app endpoints, mainly the installation token exchange.
2. Installation token: exchanged for the app token, scoped to one
   installation, valid for about an hour.

Both are cached until they come within a safety margin of expiry. The
issuer is synchronous and thread-safe; async code calls it through
asyncio.to_thread so only the requesting worker blocks while a token is
being fetched.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

import httpx
import jwt as pyjwt

from reviewbot.core.config import settings
from reviewbot.core.exceptions import AuthFailure, TransientAuthError, response_excerpt
from reviewbot.core.logging import get_logger, register_secret, unregister_secret
from reviewbot.core.secrets import SecretStore

logger = get_logger(__name__)

# Backdate iat to tolerate clock drift between us and GitHub
_CLOCK_DRIFT_SECONDS = 60

# Exchange responses that mean "this installation will not work until someone acts"
_PERMANENT_AUTH_STATUSES = {401, 403, 404, 422}

# tokens kept masked per cache slot: the current one and the one it replaced
_MASKED_GENERATIONS = 2


class TokenKind(str, Enum):
    APP_TOKEN = "app_token"
    INSTALLATION_TOKEN = "installation_token"


@dataclass(frozen=True)
class Token:
    """A derived, expiring bearer token"""
    kind: TokenKind
    value: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime
    installation_id: int | None = None

    def expires_within(self, seconds: float, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now <= timedelta(seconds=seconds)

    @property
    def authorization(self) -> str:
        if self.kind == TokenKind.APP_TOKEN:
            return f"Bearer {self.value}"
        return f"token {self.value}"


def _parse_github_timestamp(value: str) -> datetime:
    """GitHub returns e.g. 2024-05-01T12:00:00Z"""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class CredentialIssuer:
    """
    Issues and caches app and installation tokens.

    At most one token exchange is in flight per installation id: callers
    for the same installation serialize on a per-installation lock and the
    ones that waited pick up the freshly cached token. Different
    installations refresh in parallel.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        *,
        api_url: str | None = None,
        app_token_ttl: int | None = None,
        refresh_margin: int | None = None,
        http_client_factory: Callable[[], httpx.Client] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._secrets = secret_store
        self._api_url = (api_url or settings.GITHUB_API_URL).rstrip("/")
        self._app_token_ttl = app_token_ttl or settings.APP_TOKEN_TTL_SECONDS
        self._refresh_margin = (
            refresh_margin
            if refresh_margin is not None
            else settings.INSTALLATION_TOKEN_REFRESH_MARGIN_SECONDS
        )
        self._http_client_factory = http_client_factory or (
            lambda: httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._app_token: Token | None = None
        self._app_token_lock = threading.Lock()

        self._installation_tokens: dict[int, Token] = {}
        self._installation_locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # installations whose exchange was rejected; cleared only by reset_installation()
        self._blocked: dict[int, str] = {}
        # cache slot ("app" or an installation id) -> token values still masked in logs
        self._masked: dict[object, list[str]] = {}
        self._masked_lock = threading.Lock()

    def _mask(self, slot: object, value: str) -> None:
        """
        Register a new token for redaction and forget the oldest one of the slot.

        The replaced token stays masked for one more generation since a
        task that fetched it just before the refresh may still log it.
        """
        register_secret(value)
        with self._masked_lock:
            values = self._masked.setdefault(slot, [])
            values.append(value)
            while len(values) > _MASKED_GENERATIONS:
                unregister_secret(values.pop(0))

    # ==================== App token ====================

    def issue_app_token(self) -> Token:
        """Signed JWT asserting the app identity, cached until near expiry"""
        with self._app_token_lock:
            cached = self._app_token
            if cached and not cached.expires_within(self._refresh_margin, self._clock()):
                return cached

            now = self._clock()
            issued_at = now - timedelta(seconds=_CLOCK_DRIFT_SECONDS)
            expires_at = now + timedelta(seconds=self._app_token_ttl)
            payload = {
                "iat": int(issued_at.timestamp()),
                "exp": int(expires_at.timestamp()),
                "iss": self._secrets.app_id,
            }
            encoded = pyjwt.encode(payload, self._secrets.app_key, algorithm="RS256")
            self._mask("app", encoded)

            token = Token(
                kind=TokenKind.APP_TOKEN,
                value=encoded,
                issued_at=issued_at,
                expires_at=expires_at,
            )
            self._app_token = token
            logger.debug("App token issued", extra_data={"expires_at": expires_at.isoformat()})
            return token

    # ==================== Installation tokens ====================

    def _lock_for(self, installation_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._installation_locks.get(installation_id)
            if lock is None:
                lock = threading.Lock()
                self._installation_locks[installation_id] = lock
            return lock

    def _cached_installation_token(self, installation_id: int) -> Token | None:
        cached = self._installation_tokens.get(installation_id)
        if cached and not cached.expires_within(self._refresh_margin, self._clock()):
            return cached
        return None

    def issue_installation_token(self, installation_id: int) -> Token:
        """Scoped installation token, refreshed when within the safety margin"""
        if installation_id in self._blocked:
            raise AuthFailure(
                f"Installation {installation_id} is blocked after a rejected token exchange",
                details={"installation_id": installation_id, "reason": self._blocked[installation_id]},
            )

        cached = self._cached_installation_token(installation_id)
        if cached:
            return cached

        with self._lock_for(installation_id):
            # another caller may have refreshed while we waited
            cached = self._cached_installation_token(installation_id)
            if cached:
                return cached
            if installation_id in self._blocked:
                raise AuthFailure(
                    f"Installation {installation_id} is blocked after a rejected token exchange",
                    details={"installation_id": installation_id},
                )

            token = self._exchange(installation_id)
            self._installation_tokens[installation_id] = token
            return token

    def _exchange(self, installation_id: int) -> Token:
        app_token = self.issue_app_token()
        url = f"{self._api_url}/app/installations/{installation_id}/access_tokens"
        headers = {
            "Authorization": app_token.authorization,
            "Accept": "application/vnd.github+json",
        }

        try:
            with self._http_client_factory() as client:
                response = client.post(url, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(
                "Installation token exchange failed (network)",
                extra_data={"installation_id": installation_id, "error": str(e)},
            )
            raise TransientAuthError(
                f"Token exchange for installation {installation_id} failed: {type(e).__name__}",
                details={"installation_id": installation_id},
            ) from e

        if response.status_code in _PERMANENT_AUTH_STATUSES:
            reason = f"exchange returned {response.status_code}"
            self._blocked[installation_id] = reason
            self._installation_tokens.pop(installation_id, None)
            logger.error(
                "Installation token exchange rejected - installation blocked",
                extra_data={"installation_id": installation_id, "status_code": response.status_code},
            )
            raise AuthFailure(
                f"Token exchange for installation {installation_id} rejected",
                details={"installation_id": installation_id, **response_excerpt(response)},
            )

        if response.status_code != 201:
            logger.warning(
                "Installation token exchange failed",
                extra_data={"installation_id": installation_id, "status_code": response.status_code},
            )
            raise TransientAuthError(
                f"Token exchange for installation {installation_id} returned {response.status_code}",
                details={"installation_id": installation_id, "status_code": response.status_code},
            )

        try:
            data = response.json()
            value = data["token"]
            expires_at = _parse_github_timestamp(data["expires_at"])
        except (ValueError, KeyError, TypeError) as e:
            raise TransientAuthError(
                f"Malformed token exchange response for installation {installation_id}",
                details={"installation_id": installation_id},
            ) from e

        self._mask(installation_id, value)
        logger.info(
            "Installation token issued",
            extra_data={"installation_id": installation_id, "expires_at": expires_at.isoformat()},
        )
        return Token(
            kind=TokenKind.INSTALLATION_TOKEN,
            value=value,
            issued_at=self._clock(),
            expires_at=expires_at,
            installation_id=installation_id,
        )

    # ==================== Manual intervention ====================

    def is_blocked(self, installation_id: int) -> bool:
        return installation_id in self._blocked

    def reset_installation(self, installation_id: int) -> None:
        """Unblock an installation after its access was restored"""
        self._blocked.pop(installation_id, None)
        self._installation_tokens.pop(installation_id, None)
        logger.info("Installation unblocked", extra_data={"installation_id": installation_id})
