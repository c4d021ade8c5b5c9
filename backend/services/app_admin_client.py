"""
Per-app admin endpoint client.

Each app deployment exposes key-protected admin endpoints:
    GET {base}/adminDashboard?key=...&format=json            -> user list
    GET {base}/setSubscriptionStatus?email=...&status=...&key=...
    GET {base}/grantLifetime?email=...&key=...
    GET {base}/deleteUser?email=...&key=...

Every call is bounded by APP_REQUEST_TIMEOUT_SECONDS (default 5s).
Timeouts raise UpstreamTimeoutError, non-2xx raises UpstreamError.
"""
import os
import logging
import httpx
from typing import Any, Dict, Optional

from models import AppName, SubscriptionStatus
from utils.errors import UpstreamError, UpstreamTimeoutError

logger = logging.getLogger(__name__)

APP_REQUEST_TIMEOUT_SECONDS = float(os.getenv("APP_REQUEST_TIMEOUT_SECONDS", "5"))

DEFAULT_APP_ENDPOINTS = {
    AppName.SAFETUNES: "https://formal-chihuahua-623.convex.site",
    AppName.SAFETUBE: "https://rightful-rabbit-333.convex.site",
    AppName.SAFEREADS: "https://exuberant-puffin-838.convex.site",
}

# Per-app backends spell it "cancelled"
_OUTBOUND_STATUS = {
    SubscriptionStatus.CANCELED.value: "cancelled",
}


def get_app_endpoints() -> Dict[AppName, str]:
    return {
        AppName.SAFETUNES: os.getenv("SAFETUNES_ADMIN_URL", DEFAULT_APP_ENDPOINTS[AppName.SAFETUNES]),
        AppName.SAFETUBE: os.getenv("SAFETUBE_ADMIN_URL", DEFAULT_APP_ENDPOINTS[AppName.SAFETUBE]),
        AppName.SAFEREADS: os.getenv("SAFEREADS_ADMIN_URL", DEFAULT_APP_ENDPOINTS[AppName.SAFEREADS]),
    }


def get_app_admin_key() -> str:
    """Outbound key for per-app admin endpoints; falls back to ADMIN_KEY."""
    return (os.getenv("APP_ADMIN_KEY") or os.getenv("ADMIN_KEY") or "").strip()


class AppAdminClient:
    """Thin async client over the per-app admin endpoints."""

    def __init__(
        self,
        endpoints: Optional[Dict[AppName, str]] = None,
        admin_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._endpoints = endpoints
        self._admin_key = admin_key
        self.timeout = timeout if timeout is not None else APP_REQUEST_TIMEOUT_SECONDS
        self.transport = transport

    @property
    def endpoints(self) -> Dict[AppName, str]:
        return self._endpoints or get_app_endpoints()

    @property
    def admin_key(self) -> str:
        return self._admin_key if self._admin_key is not None else get_app_admin_key()

    async def _get(self, app: AppName, path: str, params: Dict[str, str]) -> httpx.Response:
        app = AppName(app)
        key = self.admin_key
        if not key:
            raise UpstreamError(app.value, "APP_ADMIN_KEY not configured")

        url = f"{self.endpoints[app].rstrip('/')}/{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, params={**params, "key": key})
        except httpx.TimeoutException:
            logger.error(f"{app.value} {path} timed out after {self.timeout}s")
            raise UpstreamTimeoutError(app.value, f"{app.value} {path} timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            logger.error(f"{app.value} {path} request failed: {e}")
            raise UpstreamError(app.value, f"{app.value} {path} request failed: {e}")

        if response.status_code < 200 or response.status_code >= 300:
            body = response.text[:200] if response.text else ""
            raise UpstreamError(
                app.value,
                f"HTTP {response.status_code} - {body}".rstrip(" -"),
                status=response.status_code,
            )
        return response

    async def fetch_users(self, app: AppName) -> Any:
        """Raw adminDashboard JSON export for one app."""
        response = await self._get(app, "adminDashboard", {"format": "json"})
        try:
            return response.json()
        except ValueError:
            raise UpstreamError(AppName(app).value, "adminDashboard returned non-JSON body")

    async def set_subscription_status(self, app: AppName, email: str, status: str) -> None:
        outbound = _OUTBOUND_STATUS.get(str(status), str(status))
        await self._get(app, "setSubscriptionStatus", {"email": email, "status": outbound})
        logger.info(f"{AppName(app).value}: set {email} -> {outbound}")

    async def delete_user(self, app: AppName, email: str) -> None:
        await self._get(app, "deleteUser", {"email": email})
        logger.info(f"{AppName(app).value}: deleted {email}")

    async def grant_lifetime(self, app: AppName, email: str) -> None:
        """Lifetime grant; safetube only exposes it through setSubscriptionStatus."""
        if AppName(app) == AppName.SAFETUBE:
            await self.set_subscription_status(app, email, SubscriptionStatus.LIFETIME.value)
            return
        await self._get(app, "grantLifetime", {"email": email})
        logger.info(f"{AppName(app).value}: granted lifetime to {email}")


# Singleton instance
app_admin_client = AppAdminClient()
