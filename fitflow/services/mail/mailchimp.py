"""Mailchimp marketing API client for the one audience trainers are subscribed to."""

import hashlib
from typing import Any

import httpx


class MailchimpError(Exception):
    def __init__(
        self, message: str, status_code: int | None = None, transient: bool = False, detail: str = ""
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient
        self.detail = detail


class MailchimpMemberNotFound(MailchimpError):
    pass


def subscriber_hash(email: str) -> str:
    """Mailchimp addresses list members by the md5 of the lower-cased e-mail."""

    return hashlib.md5(email.lower().encode()).hexdigest()  # noqa: S324


def merge_fields(first_name: str, last_name: str | None) -> dict[str, str]:
    fields = {"FNAME": first_name}
    if last_name:
        fields["LNAME"] = last_name
    return fields


class MailchimpClient:
    def __init__(
        self,
        api_key: str,
        server_prefix: str,
        audience_id: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.audience_id = audience_id
        self.client = httpx.Client(
            base_url=f"https://{server_prefix}.api.mailchimp.com/3.0/",
            auth=("fitflow", api_key),
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, path: str, body: dict[str, Any]) -> httpx.Response:
        try:
            resp = self.client.request(method, path, json=body)
        except httpx.TransportError as exc:
            raise MailchimpError(f"Mailchimp request failed: {exc}", transient=True) from exc
        if resp.status_code == 404:
            raise MailchimpMemberNotFound("Mailchimp list member not found", status_code=404)
        if resp.status_code >= 400:
            detail = ""
            try:
                detail = resp.json().get("detail", "")
            except ValueError:
                pass
            raise MailchimpError(
                f"Mailchimp request failed with status {resp.status_code} {detail}".strip(),
                status_code=resp.status_code,
                transient=resp.status_code >= 500,
                detail=detail,
            )
        return resp

    def add_list_member(self, email: str, first_name: str, last_name: str | None) -> None:
        self._request(
            "POST",
            f"lists/{self.audience_id}/members",
            {"email_address": email, "merge_fields": merge_fields(first_name, last_name), "status": "subscribed"},
        )

    def update_list_member(self, email: str, first_name: str, last_name: str | None) -> None:
        self._request(
            "PATCH",
            f"lists/{self.audience_id}/members/{subscriber_hash(email)}",
            {"email_address": email, "merge_fields": merge_fields(first_name, last_name)},
        )

    def update_list_member_tags(self, email: str, tags: list[dict[str, Any]]) -> None:
        self._request("POST", f"lists/{self.audience_id}/members/{subscriber_hash(email)}/tags", {"tags": tags})

    def close(self) -> None:
        self.client.close()
