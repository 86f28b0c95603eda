"""Apple Push Notification service sender (token based auth over HTTP/2)."""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import jwt

from fitflow.common.logging import logger


APNS_PRODUCTION_URL = "https://api.push.apple.com"
APNS_SANDBOX_URL = "https://api.sandbox.push.apple.com"
TOKEN_TTL_SECONDS = 50 * 60


@dataclass(frozen=True)
class PushFailure:
    """Per-device failure; `status`/`reason` come from the provider, `error` from the transport."""

    device: str
    status: int | None = None
    reason: str | None = None
    error: str | None = None
    connection_lost: bool = False


@dataclass
class PushResult:
    sent: list[str] = field(default_factory=list)
    failed: list[PushFailure] = field(default_factory=list)


class PushSender(Protocol):
    def send(self, payload: dict[str, Any], device_tokens: list[str]) -> PushResult: ...


class ApnsSender:
    """Send alert pushes to each device; never raises for per-device failures."""

    def __init__(
        self,
        key: str,
        key_id: str,
        team_id: str,
        topic: str,
        production: bool = True,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.key = key
        self.key_id = key_id
        self.team_id = team_id
        self.topic = topic
        self._token: str | None = None
        self._token_issued_at = 0.0
        self.client = httpx.Client(
            base_url=APNS_PRODUCTION_URL if production else APNS_SANDBOX_URL,
            http2=transport is None,
            timeout=timeout,
            transport=transport,
        )

    def provider_token(self) -> str:
        now = time.time()
        if self._token is None or now - self._token_issued_at > TOKEN_TTL_SECONDS:
            self._token = jwt.encode(
                {"iss": self.team_id, "iat": int(now)},
                self.key,
                algorithm="ES256",
                headers={"kid": self.key_id},
            )
            self._token_issued_at = now
        return self._token

    def send(self, payload: dict[str, Any], device_tokens: list[str]) -> PushResult:
        result = PushResult()
        body = json.dumps(payload, separators=(",", ":"))
        headers = {
            "authorization": f"bearer {self.provider_token()}",
            "apns-topic": self.topic,
            "apns-push-type": "alert",
        }
        for device in device_tokens:
            try:
                resp = self.client.post(f"/3/device/{device}", content=body, headers=headers)
            except httpx.TransportError as exc:
                logger.warning("push transport error device=%s error=%s", device, exc)
                result.failed.append(
                    PushFailure(
                        device=device,
                        error=str(exc) or type(exc).__name__,
                        connection_lost=isinstance(exc, (httpx.RemoteProtocolError, httpx.ReadError)),
                    )
                )
                continue
            if resp.status_code == 200:
                result.sent.append(device)
                continue
            reason = None
            try:
                reason = resp.json().get("reason")
            except ValueError:
                pass
            result.failed.append(PushFailure(device=device, status=resp.status_code, reason=reason))
        return result

    def close(self) -> None:
        self.client.close()
