"""
Outbound side effects of an order: email, WhatsApp messages and proof uploads.

Every channel goes through ``attempt``, which runs one remote call and turns
its result into an Outcome. A failing channel is logged under its label and
never stops the channels after it; there are no automatic retries.
"""
import base64
import binascii
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from html import escape
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from errors import NotificationFailure
from intake import is_messaging_phone
from receipt import format_money, receipt_filename
from schemas import CanonicalOrder, ProofAttachment
from settings import Settings

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"

Attachment = Tuple[str, bytes, str]


@dataclass
class Outcome:
    label: str
    status: str
    detail: Optional[str] = None
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.status == SENT

    def as_dict(self) -> dict:
        return {"status": self.status, "detail": self.detail}


def attempt(label: str, thunk: Callable[[], Any]) -> Outcome:
    """Run ``thunk`` once; log and report any failure instead of raising it."""
    try:
        value = thunk()
    except Exception as exc:
        logger.warning(
            f"{label} failed: {exc}",
            exc_info=True,
            extra={"extra_fields": {"channel": label, "outcome": FAILED}},
        )
        return Outcome(label, FAILED, detail=str(exc) or exc.__class__.__name__)
    logger.info(f"{label} sent", extra={"extra_fields": {"channel": label, "outcome": SENT}})
    return Outcome(label, SENT, value=value)


def skip(label: str, reason: str) -> Outcome:
    logger.info(
        f"{label} skipped: {reason}",
        extra={"extra_fields": {"channel": label, "outcome": SKIPPED}},
    )
    return Outcome(label, SKIPPED, detail=reason)


class SmtpMailer:
    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.SMTP_HOST)

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        attachments: Iterable[Attachment] = (),
    ) -> str:
        s = self.settings
        message = EmailMessage()
        message["From"] = s.MAIL_FROM
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        message.add_alternative(html, subtype="html")
        for filename, content, mimetype in attachments:
            maintype, _, subtype = mimetype.partition("/")
            message.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)

        smtp_cls = smtplib.SMTP_SSL if s.SMTP_USE_SSL else smtplib.SMTP
        with smtp_cls(s.SMTP_HOST, s.SMTP_PORT, timeout=s.HTTP_TIMEOUT) as smtp:
            if s.SMTP_STARTTLS and not s.SMTP_USE_SSL:
                smtp.starttls()
            if s.SMTP_USER:
                smtp.login(s.SMTP_USER, s.SMTP_PASSWORD or "")
            refused = smtp.send_message(message)
        if refused:
            raise NotificationFailure(f"Recipient refused: {', '.join(refused)}")
        return to


class WhatsAppClient:
    """WhatsApp Cloud API: approved templates with a freeform text fallback."""

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.settings.WHATSAPP_TOKEN and self.settings.WHATSAPP_PHONE_ID)

    def _post(self, payload: dict) -> dict:
        s = self.settings
        url = f"{s.WHATSAPP_API_URL.rstrip('/')}/{s.WHATSAPP_PHONE_ID}/messages"
        headers = {"Authorization": f"Bearer {s.WHATSAPP_TOKEN}"}
        with httpx.Client(timeout=s.HTTP_TIMEOUT, transport=self.transport) as client:
            response = client.post(url, json={"messaging_product": "whatsapp", **payload}, headers=headers)
            response.raise_for_status()
            return response.json()

    def send_text(self, to: str, body: str) -> dict:
        return self._post({
            "to": to.lstrip("+"),
            "type": "text",
            "text": {"preview_url": False, "body": body},
        })

    def send_template(self, to: str, name: str, params: List[str]) -> dict:
        return self._post({
            "to": to.lstrip("+"),
            "type": "template",
            "template": {
                "name": name,
                "language": {"code": self.settings.WHATSAPP_TEMPLATE_LANG},
                "components": [
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": str(p)} for p in params],
                    }
                ],
            },
        })

    def notify(self, to: str, params: List[str], text: str) -> str:
        """Send the configured template, falling back to ``text``. Returns the mode used."""
        template = self.settings.WHATSAPP_TEMPLATE
        if template:
            try:
                self.send_template(to, template, params)
                return "template"
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(f"WhatsApp template {template} failed, sending text instead: {exc}")
        self.send_text(to, text)
        return "text"


class AssetUploader:
    """Upload a base64 proof of payment and return its public URL."""

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.settings.UPLOAD_URL)

    @staticmethod
    def data_url(proof: ProofAttachment) -> str:
        if proof.data.startswith("data:"):
            header, _, payload = proof.data.partition(",")
        else:
            header = f"data:{proof.content_type or 'application/octet-stream'};base64"
            payload = proof.data
        try:
            base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise NotificationFailure("Proof attachment is not valid base64") from exc
        return f"{header},{payload}"

    def upload(self, proof: ProofAttachment, reference: str) -> str:
        s = self.settings
        form = {"file": self.data_url(proof), "folder": s.UPLOAD_FOLDER, "public_id": reference}
        if s.UPLOAD_PRESET:
            form["upload_preset"] = s.UPLOAD_PRESET
        with httpx.Client(timeout=s.HTTP_TIMEOUT, transport=self.transport) as client:
            response = client.post(s.UPLOAD_URL, data=form)
            response.raise_for_status()
            body = response.json()
        url = body.get("secure_url") or body.get("url")
        if not url:
            raise NotificationFailure("Upload service returned no URL")
        return url


def _item_lines(order: CanonicalOrder, currency: str) -> List[str]:
    return [
        f"{item.title} x {item.quantity} - {format_money(item.unit_price, currency)}"
        for item in order.items
    ]


def _totals_lines(order: CanonicalOrder, currency: str) -> List[str]:
    return [
        f"Subtotal: {format_money(order.subtotal, currency)}",
        f"Delivery: {format_money(order.delivery_fee, currency)}",
        f"Total: {format_money(order.grand_total, currency)}",
    ]


def _contact_lines(order: CanonicalOrder) -> List[str]:
    info = order.info
    lines = [f"Customer: {info.name}"]
    if info.phone:
        lines.append(f"Phone: {info.phone}")
    if info.email:
        lines.append(f"Email: {info.email}")
    lines.append(f"Address: {info.address}")
    if info.delivery_zone:
        lines.append(f"Zone: {info.delivery_zone}")
    if info.payment_method:
        lines.append(f"Payment: {info.payment_method}")
    for key, value in (info.payment_details or {}).items():
        lines.append(f"  {key}: {value}")
    if info.note:
        lines.append(f"Note: {info.note}")
    return lines


def _html(lines: List[str]) -> str:
    return "".join(f"<p>{escape(line)}</p>" if line else "<br>" for line in lines)


class Notifier:
    def __init__(self, settings: Settings, mailer: SmtpMailer, messenger: WhatsAppClient):
        self.settings = settings
        self.mailer = mailer
        self.messenger = messenger

    def _attachments(self, order: CanonicalOrder, receipt: Optional[bytes]) -> List[Attachment]:
        if not receipt:
            return []
        return [(receipt_filename(order.reference), receipt, "application/pdf")]

    def _email(self, label: str, to: Optional[str], subject: str, lines: List[str],
               attachments: List[Attachment]) -> Outcome:
        if not to:
            return skip(label, "no recipient")
        if not self.mailer.configured:
            return skip(label, "email transport not configured")
        text = "\n".join(lines)
        return attempt(label, lambda: self.mailer.send(to, subject, _html(lines), text, attachments))

    def _message(self, label: str, to: Optional[str], params: List[str], text: str) -> Outcome:
        if not is_messaging_phone(to):
            return skip(label, "no messaging phone")
        if not self.messenger.configured:
            return skip(label, "messaging not configured")
        return attempt(label, lambda: self.messenger.notify(to, params, text))

    def order_created(self, order: CanonicalOrder, receipt: Optional[bytes]) -> Dict[str, Outcome]:
        s = self.settings
        currency = s.CURRENCY
        total = format_money(order.grand_total, currency)
        attachments = self._attachments(order, receipt)
        items = _item_lines(order, currency)
        totals = _totals_lines(order, currency)

        admin_lines = [f"New order {order.reference}", ""] + _contact_lines(order) + [""] + items + [""] + totals
        if order.proof_url:
            admin_lines.append(f"Proof of payment: {order.proof_url}")
        customer_lines = (
            [f"Hi {order.info.name},", "", f"Thank you for your order {order.reference}.", ""]
            + items + [""] + totals
            + ["", "Your receipt is attached. We will contact you about delivery."]
        )
        params = [order.info.name, order.reference, total]

        outcomes = [
            self._email("admin_email", s.ADMIN_EMAIL, f"New order {order.reference} - {total}",
                        admin_lines, attachments),
            self._email("customer_email", order.info.email,
                        f"Your {s.STORE_NAME} order {order.reference}", customer_lines, attachments),
            self._message("admin_message", s.ADMIN_WHATSAPP, params,
                          "\n".join([f"New order {order.reference}", order.info.name,
                                     order.info.phone or order.info.email or "", f"Total: {total}"])),
            self._message("customer_message", order.info.phone, params,
                          f"Hi {order.info.name}, thanks for your order {order.reference} "
                          f"with {s.STORE_NAME}. Total: {total}. We will be in touch about delivery."),
        ]
        return {outcome.label: outcome for outcome in outcomes}

    def order_updated(self, order: CanonicalOrder, changes: List[str], receipt: Optional[bytes]) -> Outcome:
        lines = (
            [f"Hi {order.info.name},", "", f"Your order {order.reference} has been updated:"]
            + [f"- {change}" for change in changes]
            + ["", f"Total: {format_money(order.grand_total, self.settings.CURRENCY)}",
               "An updated receipt is attached."]
        )
        return self._email(
            "customer_update_email",
            order.info.email,
            f"Update on your {self.settings.STORE_NAME} order {order.reference}",
            lines,
            self._attachments(order, receipt),
        )
