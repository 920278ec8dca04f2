import logging

import httpx

from app.core.errors import ProviderAPIError

logger = logging.getLogger(__name__)


class ProviderClient:
    provider = ""

    def __init__(self, base_url: str, client_id: str | None, client_secret: str | None,
                 http: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self._http = http
        self._timeout = timeout

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._http is not None:
                resp = await self._http.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderAPIError(self.provider, f"request to {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ProviderAPIError(self.provider, f"{method} {url} returned {resp.status_code}", resp.status_code)
        return resp

    def _require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ProviderAPIError(self.provider, "client id / client secret not configured")

    async def access_token(self) -> str:
        raise NotImplementedError

    async def test_connection(self) -> dict:
        raise NotImplementedError


class DoppusClient(ProviderClient):
    provider = "doppus"

    async def access_token(self) -> str:
        self._require_credentials()
        resp = await self._request(
            "POST",
            f"{self.base_url}/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        token = resp.json().get("access_token")
        if not token:
            raise ProviderAPIError(self.provider, "token response without access_token")
        return token

    async def test_connection(self) -> dict:
        token = await self.access_token()
        await self._request("GET", f"{self.base_url}/products", headers={"Authorization": f"Bearer {token}"})
        logger.info("Doppus connection test succeeded")
        return {"provider": self.provider, "ok": True}

    async def subscription_status(self, email: str) -> dict:
        token = await self.access_token()
        resp = await self._request(
            "GET",
            f"{self.base_url}/subscriptions",
            params={"customer.email": email},
            headers={"Authorization": f"Bearer {token}"},
        )
        return resp.json()


class HotmartClient(ProviderClient):
    provider = "hotmart"

    def __init__(self, auth_url: str, api_url: str, client_id: str | None, client_secret: str | None,
                 http: httpx.AsyncClient | None = None, timeout: float = 10.0):
        super().__init__(api_url, client_id, client_secret, http=http, timeout=timeout)
        self.auth_url = auth_url.rstrip("/")

    async def access_token(self) -> str:
        self._require_credentials()
        resp = await self._request(
            "POST",
            f"{self.auth_url}/security/oauth/token",
            params={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            auth=(self.client_id, self.client_secret),
        )
        token = resp.json().get("access_token")
        if not token:
            raise ProviderAPIError(self.provider, "token response without access_token")
        return token

    async def test_connection(self) -> dict:
        token = await self.access_token()
        await self._request(
            "GET",
            f"{self.base_url}/payments/api/v1/subscriptions",
            params={"max_results": 1},
            headers={"Authorization": f"Bearer {token}"},
        )
        logger.info("Hotmart connection test succeeded")
        return {"provider": self.provider, "ok": True}

    async def subscription_status(self, email: str) -> dict:
        token = await self.access_token()
        resp = await self._request(
            "GET",
            f"{self.base_url}/payments/api/v1/subscriptions",
            params={"subscriber_email": email},
            headers={"Authorization": f"Bearer {token}"},
        )
        return resp.json()


def build_client(provider: str, credentials: dict, settings, http: httpx.AsyncClient | None = None) -> ProviderClient:
    if provider == "doppus":
        return DoppusClient(
            settings.doppus_api_url,
            credentials.get("client_id"),
            credentials.get("client_secret"),
            http=http,
            timeout=settings.provider_timeout_seconds,
        )
    if provider == "hotmart":
        return HotmartClient(
            settings.hotmart_auth_url,
            settings.hotmart_api_url,
            credentials.get("client_id"),
            credentials.get("client_secret"),
            http=http,
            timeout=settings.provider_timeout_seconds,
        )
    raise ProviderAPIError(provider, "unknown provider")
