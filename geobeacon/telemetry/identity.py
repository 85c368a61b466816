"""Anonymous identity provider backed by Firebase Authentication (REST).

The first call in an installation signs up an anonymous user; the returned
``localId`` becomes the device identity and the telemetry document key.  The
credential is persisted so the identity survives process restarts, and the
short-lived id token is refreshed from the stored refresh token when it
expires.

Endpoints used:
    identitytoolkit.googleapis.com/v1/accounts:signUp — anonymous sign-up
    securetoken.googleapis.com/v1/token               — id token refresh
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import jwt

from geobeacon.exceptions import IdentityUnavailable
from geobeacon.telemetry.base import DeviceIdentity, IdentityProvider, utc_now

logger = logging.getLogger("geobeacon.telemetry.identity")

_SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"
_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"

# Refresh this long before the id token actually expires
_EXPIRY_SKEW = timedelta(seconds=60)


# ---------------------------------------------------------------------------
# Persisted credential
# ---------------------------------------------------------------------------


@dataclass
class AnonymousCredential:
    """Anonymous session tokens.

    Attributes:
        uid:           Firebase user id (``localId``).
        id_token:      Short-lived JWT used as the Firestore bearer token.
        refresh_token: Long-lived token used to mint a new id_token.
    """

    uid: str
    id_token: str
    refresh_token: str

    @property
    def expires_at(self) -> datetime | None:
        """Expiry from the id token's ``exp`` claim, or None if unreadable."""
        try:
            claims = jwt.decode(self.id_token, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            logger.debug("Could not decode stored id token: %s", exc)
            return None
        exp = claims.get("exp")
        if exp is None:
            return None
        return datetime.fromtimestamp(int(exp), tz=timezone.utc)

    def is_expired(self, now: datetime | None = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return True
        return (now or utc_now()) >= expires_at - _EXPIRY_SKEW


class CredentialStore:
    """JSON file holding the anonymous credential.

    Writes go to a temp file in the same directory and are moved into place
    with ``os.replace``, so a concurrent reader in another process sees either
    the old or the new credential, never a partial file.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> AnonymousCredential | None:
        """Return the stored credential, or None if absent or unreadable."""
        if not self._path.exists():
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return AnonymousCredential(
                uid=data["uid"],
                id_token=data["id_token"],
                refresh_token=data["refresh_token"],
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable credential file %s: %s", self._path, exc)
            return None

    def save(self, credential: AnonymousCredential) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".credential-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(asdict(credential), fh)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class AnonymousIdentityProvider(IdentityProvider):
    """Firebase anonymous sign-in with a persisted credential."""

    def __init__(
        self,
        api_key: str,
        store: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the provider.

        Args:
            api_key:     Firebase Web API key.
            store:       Where the credential is persisted between processes.
            http_client: Optional pre-configured httpx client (for testing).
            timeout:     Per-request timeout when no client is injected.
        """
        self._api_key = api_key
        self._store = store
        self._http_client = http_client
        self._timeout = timeout

    async def get_identity(self) -> DeviceIdentity:
        credential = self._store.load()

        if credential is None:
            credential = await self._sign_up()
            self._store.save(credential)
            logger.info("Signed in anonymously as %s", credential.uid)
        elif credential.is_expired():
            credential = await self._refresh(credential)
            self._store.save(credential)
            logger.debug("Refreshed id token for %s", credential.uid)

        return DeviceIdentity(uid=credential.uid, id_token=credential.id_token)

    async def sign_out(self) -> None:
        """Forget the stored credential; the next call creates a new identity."""
        self._store.clear()
        logger.info("Cleared anonymous credential at %s", self._store.path)

    # ------------------------------------------------------------------
    # Firebase Auth REST calls
    # ------------------------------------------------------------------

    async def _sign_up(self) -> AnonymousCredential:
        data = await self._post(_SIGN_UP_URL, json={"returnSecureToken": True})
        try:
            return AnonymousCredential(
                uid=data["localId"],
                id_token=data["idToken"],
                refresh_token=data["refreshToken"],
            )
        except KeyError as exc:
            raise IdentityUnavailable(f"Sign-up response missing {exc}", exc) from exc

    async def _refresh(self, credential: AnonymousCredential) -> AnonymousCredential:
        try:
            data = await self._post(
                _TOKEN_URL,
                data={"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
            )
        except IdentityUnavailable as exc:
            rejected = isinstance(exc.original_error, httpx.HTTPStatusError)
            if rejected and exc.original_error.response.status_code == 400:
                # TOKEN_EXPIRED / USER_NOT_FOUND / USER_DISABLED: the session is gone
                logger.warning("Refresh token rejected for %s; discarding credential", credential.uid)
                self._store.clear()
            raise

        uid = data.get("user_id", credential.uid)
        if uid != credential.uid:
            logger.warning("Token refresh returned a different uid: %s → %s", credential.uid, uid)
        try:
            return AnonymousCredential(
                uid=uid,
                id_token=data["id_token"],
                refresh_token=data.get("refresh_token", credential.refresh_token),
            )
        except KeyError as exc:
            raise IdentityUnavailable(f"Token refresh response missing {exc}", exc) from exc

    async def _post(self, url: str, **kwargs: object) -> dict:
        """POST to a Firebase Auth endpoint with the API key.

        Raises:
            IdentityUnavailable: On a missing API key, transport error or non-2xx response.
        """
        if not self._api_key:
            raise IdentityUnavailable("Firebase API key is not configured (GEOBEACON_FIREBASE_API_KEY)")

        params = {"key": self._api_key}
        try:
            if self._http_client:
                response = await self._http_client.post(url, params=params, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, params=params, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Firebase Auth error: %s %s → %d",
                exc.request.method, exc.request.url.path, exc.response.status_code,
            )
            raise IdentityUnavailable(
                f"Auth backend rejected the request ({exc.response.status_code})", exc
            ) from exc
        except httpx.HTTPError as exc:
            raise IdentityUnavailable(f"Auth backend unreachable: {exc}", exc) from exc
