"""Minimal Mandrill transactional mail client."""

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field


MANDRILL_BASE_URL = "https://mandrillapp.com/api/1.0/"


class MandrillError(Exception):
    """Delivery request failed; `transient` marks transport errors and 5xx responses."""

    def __init__(self, message: str, status_code: int | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class MandrillSendResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    status: str
    message_id: str = Field(alias="_id")
    reject_reason: str | None = None


class MandrillClient:
    def __init__(self, api_key: str, timeout: float = 10.0, transport: httpx.BaseTransport | None = None) -> None:
        self.api_key = api_key
        self.client = httpx.Client(base_url=MANDRILL_BASE_URL, timeout=timeout, transport=transport)

    def _post(self, path: str, body: dict[str, Any]) -> Any:
        try:
            resp = self.client.post(path, json={"key": self.api_key, **body})
        except httpx.TransportError as exc:
            raise MandrillError(f"Mandrill request failed: {exc}", transient=True) from exc
        if resp.status_code >= 400:
            raise MandrillError(
                f"Mandrill request failed with status {resp.status_code}",
                status_code=resp.status_code,
                transient=resp.status_code >= 500,
            )
        return resp.json()

    def send_message(self, message: dict[str, Any]) -> MandrillSendResult:
        """Send one message and return the provider's result for the first recipient."""

        results = self._post("messages/send.json", {"message": message, "async": True})
        if not isinstance(results, list) or not results:
            raise MandrillError("Mandrill returned no results")
        return MandrillSendResult.model_validate(results[0])

    def close(self) -> None:
        self.client.close()
