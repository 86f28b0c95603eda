"""Twilio programmable messaging client."""

from typing import Any

import httpx


TWILIO_BASE_URL = "https://api.twilio.com/2010-04-01/"


class TwilioError(Exception):
    """The message was not accepted; `message` is the provider's explanation when it gave one."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TwilioClient:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        messaging_service_sid: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.account_sid = account_sid
        self.messaging_service_sid = messaging_service_sid
        self.client = httpx.Client(
            base_url=TWILIO_BASE_URL,
            auth=(account_sid, auth_token),
            timeout=timeout,
            transport=transport,
        )

    def send_message(
        self, to: str, body: str, status_callback: str, from_number: str | None = None
    ) -> dict[str, Any]:
        """Queue one message. Raises `httpx.TransportError` when Twilio could not be reached."""

        form = {"To": to, "Body": body, "StatusCallback": status_callback}
        if from_number:
            form["From"] = from_number
        elif self.messaging_service_sid:
            form["MessagingServiceSid"] = self.messaging_service_sid
        else:
            raise TwilioError("a sender number or messaging service is required")

        resp = self.client.post(f"Accounts/{self.account_sid}/Messages.json", data=form)
        if resp.status_code >= 400:
            message = f"Twilio API responded with status {resp.status_code}"
            try:
                detail = resp.json().get("message")
            except ValueError:
                detail = None
            if isinstance(detail, str):
                message = detail
            raise TwilioError(message, status_code=resp.status_code)
        return resp.json()

    def close(self) -> None:
        self.client.close()
