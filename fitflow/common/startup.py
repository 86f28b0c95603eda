"""Startup-time config summary with secrets redacted."""

from fitflow.common.config import CommonSettings
from fitflow.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_config(config: CommonSettings) -> dict[str, object]:
    """Settings as a dict; secret-like fields show only whether they are set."""

    summary: dict[str, object] = {}
    for name, value in config.model_dump().items():
        if any(marker in name for marker in SECRET_MARKERS):
            summary[name] = "<set>" if value else "<unset>"
        else:
            summary[name] = value
    return summary


def log_startup_config(config: CommonSettings) -> None:
    """Log effective settings and which optional provider capabilities are enabled."""

    capabilities = {
        "payments": bool(config.stripe_secret_key),
        "push": bool(config.apns_key and config.apns_key_id and config.apns_team_id and config.ios_bundle_id),
        "receipts": bool(config.app_store_shared_secret),
        "mail": bool(config.mandrill_api_key),
        "mailing_list": bool(config.mailchimp_api_key and config.mailchimp_audience_id),
    }
    logger.info("startup_config=%s capabilities=%s", redacted_config(config), capabilities)
