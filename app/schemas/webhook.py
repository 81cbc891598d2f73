from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

SUPPORTED_MESSAGE_TYPES = ("text", "button", "interactive")


class WhatsAppProfile(BaseModel):
    name: Optional[str] = None


class WhatsAppContact(BaseModel):
    wa_id: Optional[str] = None
    profile: Optional[WhatsAppProfile] = None


class WhatsAppText(BaseModel):
    body: str = ""


class WhatsAppButton(BaseModel):
    text: Optional[str] = None
    payload: Optional[str] = None


class WhatsAppReply(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None


class WhatsAppInteractive(BaseModel):
    type: Optional[str] = None
    button_reply: Optional[WhatsAppReply] = None
    list_reply: Optional[WhatsAppReply] = None


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    from_: str = Field(validation_alias=AliasChoices("from", "from_"), serialization_alias="from")
    timestamp: Optional[str] = None
    type: str = "unknown"
    text: Optional[WhatsAppText] = None
    button: Optional[WhatsAppButton] = None
    interactive: Optional[WhatsAppInteractive] = None


class WhatsAppStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    recipient_id: Optional[str] = None
    timestamp: Optional[str] = None
    errors: Optional[list[dict[str, Any]]] = None


class WhatsAppValue(BaseModel):
    messaging_product: Optional[str] = None
    contacts: list[WhatsAppContact] = Field(default_factory=list)
    messages: list[WhatsAppMessage] = Field(default_factory=list)
    statuses: list[WhatsAppStatus] = Field(default_factory=list)


class WhatsAppChange(BaseModel):
    field: Optional[str] = None
    value: WhatsAppValue = Field(default_factory=WhatsAppValue)


class WhatsAppEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WhatsAppChange] = Field(default_factory=list)


class WhatsAppWebhookPayload(BaseModel):
    object: Optional[str] = None
    entry: list[WhatsAppEntry] = Field(default_factory=list)


class InboundMessage(BaseModel):
    """One user message, flattened out of the platform envelope."""

    wa_message_id: str
    from_raw: str
    type: str
    text: str = ""
    interactive_id: Optional[str] = None
    interactive_title: Optional[str] = None
    profile_name: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    ok: bool = True
    processed: int = 0
    duplicates: int = 0
    statuses: int = 0


def _flatten_message(message: WhatsAppMessage, profile_name: Optional[str]) -> Optional[InboundMessage]:
    if message.type not in SUPPORTED_MESSAGE_TYPES:
        return None
    interactive_id = None
    interactive_title = None
    if message.type == "text":
        text = message.text.body if message.text else ""
    elif message.type == "button":
        button = message.button or WhatsAppButton()
        text = button.text or button.payload or ""
        interactive_id = button.payload
        interactive_title = button.text
    elif message.type == "interactive":
        interactive = message.interactive or WhatsAppInteractive()
        reply = interactive.button_reply or interactive.list_reply or WhatsAppReply()
        interactive_id = reply.id
        interactive_title = reply.title
        text = reply.title or reply.id or ""
    return InboundMessage(
        wa_message_id=message.id,
        from_raw=message.from_,
        type=message.type,
        text=text,
        interactive_id=interactive_id,
        interactive_title=interactive_title,
        profile_name=profile_name,
        raw=message.model_dump(by_alias=True, exclude_none=True),
    )


def extract_messages(payload: WhatsAppWebhookPayload) -> list[InboundMessage]:
    """Supported user messages in delivery order; media and system messages are skipped."""
    out: list[InboundMessage] = []
    for entry in payload.entry:
        for change in entry.changes:
            value = change.value
            profile = value.contacts[0].profile if value.contacts else None
            profile_name = profile.name if profile else None
            for message in value.messages:
                flattened = _flatten_message(message, profile_name)
                if flattened is not None:
                    out.append(flattened)
    return out


def extract_statuses(payload: WhatsAppWebhookPayload) -> list[WhatsAppStatus]:
    return [status for entry in payload.entry for change in entry.changes for status in change.value.statuses]
