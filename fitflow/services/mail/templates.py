"""HTML for client-facing call-to-action e-mails, and the signed-in links they carry."""

from datetime import timedelta
from html import escape
from urllib.parse import quote

from sqlalchemy import select

from fitflow.common.config import settings
from fitflow.common.db import utcnow
from fitflow.common.models import AccessToken, Client


CLIENT_DASHBOARD_TOKEN_LIFETIME = timedelta(days=7)


BRAND_COLORS = {
    "amber": "#d97706",
    "blue": "#2563eb",
    "cyan": "#0ea5e9",
    "emerald": "#059669",
    "fuchsia": "#c026d3",
    "green": "#16a34a",
    "indigo": "#4f46e5",
    "lightBlue": "#0284c7",
    "lime": "#65a30d",
    "orange": "#ea580c",
    "pink": "#db2777",
    "purple": "#7c3aed",
    "red": "#dc2626",
    "rose": "#e11d48",
    "sky": "#0284c7",
    "teal": "#0d9488",
    "violet": "#7c3aed",
    "yellow": "#ca8a04",
}


def create_client_dashboard_link(db, client_id: str, client_email: str) -> str:
    """Link that signs the client straight into their dashboard for a week.

    The access token is added to `db` and commits or rolls back with the caller's
    transaction, so a link is only ever mailed together with its token.
    """

    user_id = db.execute(select(Client.user_id).where(Client.id == client_id)).scalar_one_or_none()
    if user_id is None:
        raise LookupError(f"client {client_id} has no user to sign in as")
    token = AccessToken(
        user_id=user_id,
        user_type="client",
        type="client_dashboard",
        expires_at=utcnow() + CLIENT_DASHBOARD_TOKEN_LIFETIME,
    )
    db.add(token)
    db.flush()
    return (
        f"{settings.base_url.rstrip('/')}/client-dashboard/link#/client/{client_id}/{token.id}"
        f"?email={quote(client_email)}"
    )


def cta_email(
    body_heading: str,
    body_html: str,
    receiving_reason: str,
    button_text: str | None = None,
    button_link: str | None = None,
    logo_url: str | None = None,
    logo_alt: str = "",
    brand_color: str | None = None,
) -> str:
    """Render the branded single-column e-mail. `body_html` is trusted markup."""

    color = BRAND_COLORS.get(brand_color or "", BRAND_COLORS["blue"])
    logo = ""
    if logo_url:
        logo = (
            f'<img src="{escape(logo_url)}" alt="{escape(logo_alt)}" '
            'style="max-width:160px;height:auto;border-radius:12px;" />'
        )
    button_row = ""
    if button_text and button_link:
        button_row = (
            '<tr><td align="center" style="padding:16px 0;">'
            f'<a href="{escape(button_link)}" style="background:{color};color:#ffffff;padding:14px 20px;'
            'border-radius:10px;text-decoration:none;font-weight:700;display:inline-block;">'
            f"{escape(button_text)}</a></td></tr>"
        )

    return f"""<!doctype html>
<html lang="en">
  <body style="margin:0;padding:0;background-color:#f7f9fb;font-family:Arial,sans-serif;">
    <table role="presentation" cellpadding="0" cellspacing="0" width="100%">
      <tr>
        <td align="center" style="padding:32px 16px;">
          <table role="presentation" cellpadding="0" cellspacing="0" width="100%"
                 style="max-width:560px;background:#ffffff;border-radius:12px;padding:32px;">
            <tr><td align="center" style="padding-bottom:24px;">{logo}</td></tr>
            <tr>
              <td style="font-size:22px;font-weight:700;color:#111827;text-align:center;padding-bottom:12px;">
                {escape(body_heading)}
              </td>
            </tr>
            <tr>
              <td style="font-size:16px;line-height:1.6;color:#1f2937;padding-bottom:16px;text-align:center;">
                {body_html}
              </td>
            </tr>
            {button_row}
            <tr>
              <td style="font-size:12px;line-height:1.6;color:#6b7280;padding-top:16px;text-align:center;">
                You received this email because {escape(receiving_reason)}.
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>"""
