from typing import Dict, Optional, Union

import httpx
import structlog

logger = structlog.get_logger()

Result = Dict[str, Union[bool, str]]


class MailerLite:
    """
    Newsletter sync. Never raises: callers log the returned error and carry
    on, the local newsletter row is the source of truth.
    """

    def __init__(self, http: httpx.AsyncClient, api_key: str,
                 group_id: Optional[str], api_url: str):
        self.http = http
        self.api_key = api_key
        self.group_id = group_id or None
        self.api_url = api_url.rstrip("/")

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    async def add_subscriber(self, email: str,
                             source: str = "free_download") -> Result:
        if not self.api_key:
            logger.error("mailerlite.not_configured")
            return {"success": False, "error": "Mailerlite not configured"}

        body = {"email": email, "status": "active", "fields": {"source": source}}
        if self.group_id:
            body["groups"] = [self.group_id]

        try:
            resp = await self.http.post(f"{self.api_url}/subscribers",
                                        json=body, headers=self._headers())
            try:
                data = resp.json()
            except ValueError:
                data = {}

            if resp.is_success:
                logger.info("mailerlite.subscribed", email=email,
                            source=source)
                return {"success": True}

            message = str(data.get("message") or "")
            if resp.status_code == 422 or "already exists" in message:
                logger.info("mailerlite.already_subscribed", email=email)
                if self.group_id:
                    await self._add_existing_to_group(email)
                return {"success": True}

            logger.error("mailerlite.api_error", status=resp.status_code,
                         body=data)
            return {"success": False,
                    "error": message or "Failed to add subscriber"}
        except httpx.HTTPError as e:
            logger.error("mailerlite.request_failed", error=str(e))
            return {"success": False, "error": str(e)}

    async def _add_existing_to_group(self, email: str) -> None:
        try:
            resp = await self.http.get(
                f"{self.api_url}/subscribers",
                params={"filter[email]": email},
                headers=self._headers(),
            )
            found = resp.json().get("data") or []
            if not found:
                return
            subscriber_id = found[0]["id"]
            await self.http.post(
                f"{self.api_url}/subscribers/{subscriber_id}"
                f"/groups/{self.group_id}",
                headers=self._headers(),
            )
            logger.info("mailerlite.added_to_group", email=email)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            # best effort
            logger.warning("mailerlite.group_add_failed", email=email,
                           error=str(e))
