from __future__ import annotations
# crm_api/services/cache.py
import httpx
from crm_api.config import settings

# Module-level singleton: one TLS connection pool for every Redis call.
_http = httpx.AsyncClient(
    limits=httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30)
)


class UpstashClient:
    """Minimal Upstash Redis REST client (idempotency replay cache)."""

    def __init__(self):
        self.url = settings.UPSTASH_REDIS_REST_URL
        self.headers = {"Authorization": f"Bearer {settings.UPSTASH_REDIS_REST_TOKEN}"}

    async def get(self, key: str) -> str | None:
        r = await _http.get(f"{self.url}/get/{key}", headers=self.headers)
        return r.json().get("result")

    async def set(self, key: str, value: str, ex: int = 300):
        # Command-array form: cached JSON bodies cannot travel in a URL path
        await _http.post(
            self.url, headers=self.headers, json=["SET", key, value, "EX", ex]
        )

    async def delete(self, key: str):
        await _http.get(f"{self.url}/del/{key}", headers=self.headers)

    async def setnx(self, key: str, value: str, ex: int = 300) -> bool:
        """Set key only if it does not exist. Returns True if the key was set."""
        r = await _http.get(
            f"{self.url}/set/{key}/{value}/nx/ex/{ex}", headers=self.headers
        )
        return r.json().get("result") == "OK"

    async def ping(self) -> bool:
        r = await _http.get(f"{self.url}/ping", headers=self.headers)
        return r.json().get("result") == "PONG"


cache = UpstashClient()
