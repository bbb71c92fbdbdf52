"""IdP management API client.

Wraps the user management endpoints used for reconciliation:
- Human user import
- Profile, email and username updates (generic PUT on user_path)
- Exact userName search

Every call returns an IdpResult; transport and HTTP failures are normalized
into IdpError values and never raised past this module.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from celine.idsync.config import IdpSettings
from celine.idsync.idp.errors import ErrorKind, IdpError, IdpResult
from celine.idsync.idp.token import TokenCache
from celine.idsync.models import LocalUser, Profile

logger = logging.getLogger(__name__)


def prepare_import_payload(user: LocalUser, profile: Profile) -> dict[str, Any]:
    """Build the human user import body.

    This shape is the wire contract of the import endpoint.
    """
    return {
        "userName": user.username,
        "profile": {
            "firstName": profile.first_name,
            "lastName": profile.last_name,
            "displayName": profile.full_name,
            "nickName": profile.nickname or "",
        },
        "email": {
            "email": user.email,
            "isEmailVerified": True,
        },
        "hashedPassword": {
            "value": user.password_hash,
        },
    }


def prepare_profile_payload(profile: Profile) -> dict[str, Any]:
    return {
        "firstName": profile.first_name,
        "lastName": profile.last_name,
        "displayName": profile.full_name,
        "nickName": profile.nickname or "",
    }


def prepare_email_payload(user: LocalUser) -> dict[str, Any]:
    return {
        "email": user.email,
        "isEmailVerified": bool(user.email_confirmed),
    }


def prepare_username_payload(user: LocalUser) -> dict[str, Any]:
    return {"userName": user.username}


def management_path(api_version: str, suffix: str) -> str:
    """Path of a user management resource, relative to the base URL."""
    return f"/management/{api_version}/users/{suffix}"


def import_path(api_version: str) -> str:
    return management_path(api_version, "human/_import")


def search_path(api_version: str) -> str:
    return management_path(api_version, "_search")


def user_path(api_version: str, external_id: str, sub_resource: str) -> str:
    """Path of a sub-resource (profile, email, username) of one IdP user."""
    return management_path(api_version, f"{external_id}/{sub_resource}")


def _extract_message(response: httpx.Response) -> str:
    """Best-effort error message from a response body."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    text = response.text.strip()
    if text:
        return text
    return f"HTTP {response.status_code} {response.reason_phrase}".strip()


class IdpClient:
    """Async client for the IdP management REST API."""

    def __init__(
        self,
        settings: IdpSettings,
        token_cache: TokenCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._token_cache = token_cache or TokenCache(settings)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "IdpClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(
            timeout=self._settings.timeout,
            transport=self._transport,
        )
        self._token_cache.bind(self._client)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def settings(self) -> IdpSettings:
        return self._settings

    @property
    def token_cache(self) -> TokenCache:
        return self._token_cache

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def import_path(self) -> str:
        return import_path(self._settings.api_version)

    def search_path(self) -> str:
        return search_path(self._settings.api_version)

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    async def send(
        self, method: str, path: str, body: dict[str, Any] | None = None
    ) -> IdpResult[Any]:
        """Send a request to the IdP and normalize the outcome."""
        if self._client is None:
            return IdpResult.failure(
                IdpError("IdP client is not open", kind=ErrorKind.CONFIG)
            )

        token = await self._token_cache.get_token()
        if not token.ok:
            return IdpResult.failure(token.error)

        url = path if path.startswith(("http://", "https://")) else f"{self._settings.base_url}{path}"
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {token.data}",
        }
        if body is not None:
            headers["Content-Type"] = "application/json"

        try:
            response = await self._client.request(method, url, headers=headers, json=body)
        except httpx.TimeoutException as e:
            logger.warning("IdP request timed out method=%s path=%s", method, path)
            return IdpResult.failure(
                IdpError(f"Request timed out: {e}", kind=ErrorKind.TIMEOUT)
            )
        except httpx.InvalidURL as e:
            return IdpResult.failure(IdpError(f"Invalid URL: {e}", kind=ErrorKind.CONFIG))
        except httpx.HTTPError as e:
            logger.warning("IdP transport failure method=%s path=%s error=%s", method, path, e)
            return IdpResult.failure(
                IdpError(f"Transport failure: {e}", kind=ErrorKind.TRANSPORT)
            )

        return self._handle_response(method, path, response)

    def _handle_response(
        self, method: str, path: str, response: httpx.Response
    ) -> IdpResult[Any]:
        status = response.status_code

        if status >= 500:
            return IdpResult.failure(
                IdpError(
                    _extract_message(response),
                    kind=ErrorKind.SERVER,
                    status_code=status,
                )
            )

        if status >= 400:
            logger.info("IdP rejected request method=%s path=%s status=%s", method, path, status)
            return IdpResult.failure(
                IdpError(
                    _extract_message(response),
                    kind=ErrorKind.CLIENT,
                    status_code=status,
                )
            )

        if status == 204 or not response.content:
            return IdpResult.success({})

        try:
            return IdpResult.success(response.json())
        except ValueError as e:
            logger.error(
                "Malformed JSON from IdP method=%s path=%s status=%s error=%s",
                method, path, status, e,
            )
            return IdpResult.failure(
                IdpError(
                    f"Malformed JSON response: {e}",
                    kind=ErrorKind.DECODE,
                    status_code=status,
                )
            )

    async def get(self, path: str) -> IdpResult[Any]:
        return await self.send("GET", path)

    async def post(self, path: str, json: dict[str, Any] | None = None) -> IdpResult[Any]:
        return await self.send("POST", path, json)

    async def put(self, path: str, json: dict[str, Any] | None = None) -> IdpResult[Any]:
        return await self.send("PUT", path, json)

    async def delete(self, path: str) -> IdpResult[Any]:
        return await self.send("DELETE", path)

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def import_user(self, payload: dict[str, Any]) -> IdpResult[Any]:
        """Import a human user. On success data carries `userId`."""
        logger.debug("Importing user: %s", payload.get("userName"))
        return await self.post(self.import_path(), json=payload)

    async def search_by_username(self, username: str) -> IdpResult[str | None]:
        """Find a user by exact userName. Data is the IdP id or None."""
        logger.info("Checking user existence at IdP: %s", username)
        query = {
            "queries": [
                {
                    "userNameQuery": {
                        "userName": username,
                        "method": "TEXT_QUERY_METHOD_EQUALS",
                    }
                }
            ]
        }
        result = await self.post(self.search_path(), json=query)
        if not result.ok:
            return IdpResult.failure(result.error)

        matches = result.data.get("result") if isinstance(result.data, dict) else None
        if matches and isinstance(matches[0], dict) and matches[0].get("id"):
            return IdpResult.success(str(matches[0]["id"]))
        return IdpResult.success(None)
