"""Closed set of task kinds and the typed payload carried by each.

Payloads are stored as camelCase JSON in the outbox and parsed back into these
models before a handler sees them. Adding a kind means adding an enum member, a
payload model, and a handler registration; the dispatcher itself is unchanged.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TaskKind(str, Enum):
    USER_NOTIFY = "user.notify"
    CHARGE_OUTSTANDING = "payment-plan.charge-outstanding"
    CHARGE_PAYMENT_PLANS = "chargePaymentPlans"
    SEND_MAIL = "sendMail"
    PROCESS_MANDRILL_EVENT = "processMandrillEvent"
    CREATE_STRIPE_ACCOUNT = "createStripeAccount"
    UPDATE_MAILCHIMP_LIST_MEMBER_TAGS = "updateMailchimpListMemberTags"
    REFRESH_APP_STORE_RECEIPTS = "refreshAppStoreReceipts"
    SEND_PAYMENT_REMINDERS = "sendPaymentReminders"
    PROCESS_STRIPE_EVENT = "processStripeEvent"
    TAG_TRIALLED_DIDNT_SUB = "tagTrialledDidntSub"
    MAILCHIMP_SUBSCRIBE = "mailchimp.subscribe"
    MAILCHIMP_REFRESH_USER_PROPERTIES = "mailchimp.refresh_user_properties"
    SEND_SMS = "sendSms"


RECURRING_TASK_KINDS = (
    TaskKind.CHARGE_PAYMENT_PLANS,
    TaskKind.SEND_PAYMENT_REMINDERS,
    TaskKind.REFRESH_APP_STORE_RECEIPTS,
    TaskKind.TAG_TRIALLED_DIDNT_SUB,
)


class TaskPayload(BaseModel):
    """Base for all payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserNotifyPayload(TaskPayload):
    user_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    message_type: Literal["default", "success", "failure"] = "default"
    notification_type: Literal["transaction", "reminder", "general"] = "general"
    client_id: str | None = None
    session_pack_id: str | None = None
    payment_plan_id: str | None = None
    payment_id: str | None = None
    payment_plan_payment_id: str | None = None
    device_tokens: list[str] | None = None
    skip_app_notification: bool | None = None


class ChargeOutstandingPayload(TaskPayload):
    payment_plan_id: str = Field(min_length=1)
    for_scheduled_task: bool = False


class SendMailPayload(TaskPayload):
    id: str = Field(min_length=1)


class MandrillEventPayload(TaskPayload):
    ts: int
    message_id: str = Field(alias="_id", min_length=1)
    event: Literal["send", "hard_bounce", "soft_bounce", "open", "click", "reject", "unsub", "spam", "deferral"]


class CreateStripeAccountPayload(TaskPayload):
    trainer_id: str = Field(min_length=1)


class MailingListTag(TaskPayload):
    name: str = Field(min_length=1)
    status: Literal["active", "inactive"]


class UpdateListMemberTagsPayload(TaskPayload):
    trainer_id: str = Field(min_length=1)
    tags: list[MailingListTag] = Field(min_length=1)


class StripeEventPayload(TaskPayload):
    id: str = Field(min_length=1)


class TrainerPayload(TaskPayload):
    trainer_id: str = Field(min_length=1)


class RefreshUserPropertiesPayload(TaskPayload):
    """`email` is the list address whose name fields are refreshed from the trainer row."""

    trainer_id: str = Field(min_length=1)
    email: str = Field(min_length=1)


class SendSmsPayload(TaskPayload):
    id: str = Field(min_length=1)


class ScheduledTaskPayload(TaskPayload):
    scheduled_at: datetime | None = None


TASK_PAYLOAD_MODELS: dict[TaskKind, type[TaskPayload]] = {
    TaskKind.USER_NOTIFY: UserNotifyPayload,
    TaskKind.CHARGE_OUTSTANDING: ChargeOutstandingPayload,
    TaskKind.CHARGE_PAYMENT_PLANS: ScheduledTaskPayload,
    TaskKind.SEND_MAIL: SendMailPayload,
    TaskKind.PROCESS_MANDRILL_EVENT: MandrillEventPayload,
    TaskKind.CREATE_STRIPE_ACCOUNT: CreateStripeAccountPayload,
    TaskKind.UPDATE_MAILCHIMP_LIST_MEMBER_TAGS: UpdateListMemberTagsPayload,
    TaskKind.REFRESH_APP_STORE_RECEIPTS: ScheduledTaskPayload,
    TaskKind.SEND_PAYMENT_REMINDERS: ScheduledTaskPayload,
    TaskKind.PROCESS_STRIPE_EVENT: StripeEventPayload,
    TaskKind.TAG_TRIALLED_DIDNT_SUB: ScheduledTaskPayload,
    TaskKind.MAILCHIMP_SUBSCRIBE: TrainerPayload,
    TaskKind.MAILCHIMP_REFRESH_USER_PROPERTIES: RefreshUserPropertiesPayload,
    TaskKind.SEND_SMS: SendSmsPayload,
}


def parse_task_payload(kind: TaskKind | str, payload: Any) -> TaskPayload:
    """Validate raw payload data for one kind; raises ValueError/ValidationError."""

    model = TASK_PAYLOAD_MODELS[TaskKind(kind)]
    if isinstance(payload, model):
        return payload
    if isinstance(payload, TaskPayload):
        payload = payload.to_json()
    return model.model_validate(payload)
