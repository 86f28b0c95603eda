"""Wiring from task kinds to handlers, their retry policies, and provider adapters."""

from datetime import timedelta

from fitflow.common.config import CommonSettings
from fitflow.common.tasks import TaskKind
from fitflow.services.appstore.receipts import ReceiptVerifier
from fitflow.services.appstore.service import AppStoreService
from fitflow.services.billing.events import StripeEventService
from fitflow.services.billing.gateway import GatewayError, StripeGateway
from fitflow.services.billing.reminders import PaymentReminderService
from fitflow.services.billing.service import BillingService
from fitflow.services.mail.mailchimp import MailchimpClient, MailchimpError
from fitflow.services.mail.mandrill import MandrillClient, MandrillError
from fitflow.services.mail.service import MailService
from fitflow.services.notification.apns import ApnsSender
from fitflow.services.notification.service import NotificationService
from fitflow.services.sms.service import SmsService
from fitflow.services.sms.twilio import TwilioClient
from fitflow.services.worker.dispatcher import Dispatcher, TaskRegistration
from fitflow.services.worker.policies import is_transient, never_retry, retry_on, retry_on_database_outage


PROVIDER_RETRY_DELAY = timedelta(minutes=5)


def build_registrations(
    billing: BillingService,
    reminders: PaymentReminderService,
    notifications: NotificationService,
    appstore: AppStoreService,
    mail: MailService,
    stripe_events: StripeEventService,
    sms: SmsService,
) -> dict[TaskKind, TaskRegistration]:
    provider_outage = retry_on(
        MandrillError, MailchimpError, delay=PROVIDER_RETRY_DELAY, predicate=is_transient
    )
    return {
        TaskKind.USER_NOTIFY: TaskRegistration(notifications.handle_user_notify, retry_on_database_outage),
        TaskKind.CHARGE_OUTSTANDING: TaskRegistration(billing.handle_charge_outstanding, never_retry),
        TaskKind.CHARGE_PAYMENT_PLANS: TaskRegistration(billing.handle_charge_payment_plans, never_retry),
        TaskKind.CREATE_STRIPE_ACCOUNT: TaskRegistration(
            billing.handle_create_stripe_account,
            retry_on(GatewayError, delay=PROVIDER_RETRY_DELAY, predicate=is_transient),
        ),
        TaskKind.SEND_PAYMENT_REMINDERS: TaskRegistration(reminders.handle_send_payment_reminders, never_retry),
        TaskKind.REFRESH_APP_STORE_RECEIPTS: TaskRegistration(
            appstore.handle_refresh_app_store_receipts, never_retry
        ),
        TaskKind.SEND_MAIL: TaskRegistration(mail.handle_send_mail, provider_outage),
        TaskKind.PROCESS_MANDRILL_EVENT: TaskRegistration(
            mail.handle_process_mandrill_event, retry_on_database_outage
        ),
        TaskKind.UPDATE_MAILCHIMP_LIST_MEMBER_TAGS: TaskRegistration(
            mail.handle_update_list_member_tags, provider_outage
        ),
        TaskKind.MAILCHIMP_SUBSCRIBE: TaskRegistration(mail.handle_mailchimp_subscribe, provider_outage),
        TaskKind.MAILCHIMP_REFRESH_USER_PROPERTIES: TaskRegistration(
            mail.handle_mailchimp_refresh_user_properties, provider_outage
        ),
        TaskKind.TAG_TRIALLED_DIDNT_SUB: TaskRegistration(mail.handle_tag_trialled_didnt_sub, never_retry),
        TaskKind.PROCESS_STRIPE_EVENT: TaskRegistration(
            stripe_events.handle_process_stripe_event, retry_on_database_outage
        ),
        TaskKind.SEND_SMS: TaskRegistration(sms.handle_send_sms, never_retry),
    }


def build_dispatcher(session_factory, config: CommonSettings) -> Dispatcher:
    """Create provider adapters from settings; missing credentials leave a capability disabled."""

    gateway = None
    if config.stripe_secret_key:
        gateway = StripeGateway(config.stripe_secret_key, config.stripe_api_version)

    push = None
    if config.apns_key and config.apns_key_id and config.apns_team_id and config.ios_bundle_id:
        push = ApnsSender(
            key=config.apns_key,
            key_id=config.apns_key_id,
            team_id=config.apns_team_id,
            topic=config.ios_bundle_id,
            production=config.apns_production,
            timeout=config.http_timeout_seconds,
        )

    mandrill = None
    if config.mandrill_api_key:
        mandrill = MandrillClient(config.mandrill_api_key, timeout=config.http_timeout_seconds)

    mailchimp = None
    if config.mailchimp_api_key and config.mailchimp_audience_id and config.mailchimp_server_prefix:
        mailchimp = MailchimpClient(
            config.mailchimp_api_key,
            config.mailchimp_server_prefix,
            config.mailchimp_audience_id,
            timeout=config.http_timeout_seconds,
        )

    twilio = None
    if config.twilio_account_sid and config.twilio_auth_token:
        twilio = TwilioClient(
            config.twilio_account_sid,
            config.twilio_auth_token,
            config.twilio_messaging_service_sid,
            timeout=config.http_timeout_seconds,
        )

    registrations = build_registrations(
        billing=BillingService(session_factory, gateway),
        reminders=PaymentReminderService(session_factory),
        notifications=NotificationService(session_factory, push),
        appstore=AppStoreService(
            session_factory,
            ReceiptVerifier(timeout=config.http_timeout_seconds),
            config.app_store_shared_secret,
        ),
        mail=MailService(session_factory, mandrill, mailchimp),
        stripe_events=StripeEventService(session_factory, gateway),
        sms=SmsService(session_factory, twilio),
    )
    return Dispatcher(
        session_factory,
        registrations,
        service_name=config.service_name,
        concurrency=config.worker_concurrency,
        poll_interval_seconds=config.poll_interval_seconds,
        claim_timeout_seconds=config.claim_timeout_seconds,
    )
