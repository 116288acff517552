from __future__ import annotations

import logging
import re
import smtplib
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from functools import partial
from typing import Any, Protocol

import httpx

from app.core.config import Settings
from app.crm.models import CRMTenant
from app.metrics import observe_outbound_request

logger = logging.getLogger("app.automation.outbound")

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.HTTPError,
    httpx.InvalidURL,
    smtplib.SMTPException,
    OSError,
)

_NON_DIGIT_RE = re.compile(r"[^0-9]")


def normalize_api_url(api_url: str) -> str:
    url = api_url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/")


def digits_only(value: str) -> str:
    return _NON_DIGIT_RE.sub("", value)


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    secure: bool
    user: str
    password: str

    @classmethod
    def from_tenant(cls, tenant: CRMTenant | None) -> SmtpConfig | None:
        raw = tenant.smtp_config if tenant is not None else None
        if not isinstance(raw, dict):
            return None
        host, port, user, password = raw.get("host"), raw.get("port"), raw.get("user"), raw.get("pass")
        if not host or not port or not user or not password:
            return None
        try:
            port_number = int(port)
        except (TypeError, ValueError):
            return None
        return cls(host=str(host), port=port_number, secure=bool(raw.get("secure")), user=str(user), password=str(password))


@dataclass(frozen=True)
class WhatsAppConfig:
    instance_name: str
    api_url: str
    api_key: str

    @classmethod
    def from_tenant(cls, tenant: CRMTenant | None) -> WhatsAppConfig | None:
        if tenant is None:
            return None
        if not tenant.whatsapp_instance_name or not tenant.whatsapp_api_url or not tenant.whatsapp_api_key:
            return None
        return cls(
            instance_name=tenant.whatsapp_instance_name,
            api_url=tenant.whatsapp_api_url,
            api_key=tenant.whatsapp_api_key,
        )


class WebhookSender:
    def __init__(self, client: httpx.Client):
        self.client = client

    def post_json(self, url: str, body: dict[str, Any]) -> None:
        response = self.client.post(url, json=body)
        response.raise_for_status()


class WhatsAppSender:
    """Evolution API text messages."""

    def __init__(self, client: httpx.Client):
        self.client = client

    def send_text(self, config: WhatsAppConfig, *, number: str, text: str) -> None:
        url = f"{normalize_api_url(config.api_url)}/message/sendText/{config.instance_name}"
        response = self.client.post(
            url,
            json={"number": number, "text": text},
            headers={"apikey": config.api_key},
        )
        response.raise_for_status()


class SmtpMailSender:
    def __init__(self, timeout: float):
        self.timeout = timeout

    def send(self, config: SmtpConfig, *, to: str, subject: str, html: str) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((config.user.split("@")[0], config.user))
        message["To"] = to
        message.set_content(html, subtype="html")

        if config.secure:
            server: smtplib.SMTP = smtplib.SMTP_SSL(config.host, config.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(config.host, config.port, timeout=self.timeout)
        with server:
            if not config.secure:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
            server.login(config.user, config.password)
            server.send_message(message)


def deliver(channel: str, send: Callable[[], None], log_fields: dict[str, Any] | None = None) -> bool:
    """Run one outbound call; transport failures are logged and reported as False."""
    try:
        send()
    except TRANSPORT_ERRORS as exc:
        observe_outbound_request(channel, "failed")
        logger.warning(
            "automation_outbound_failed",
            extra={**(log_fields or {}), "channel": channel, "error": str(exc)},
        )
        return False
    observe_outbound_request(channel, "sent")
    logger.info("automation_outbound_sent", extra={**(log_fields or {}), "channel": channel})
    return True


class Dispatcher(Protocol):
    def submit(self, channel: str, send: Callable[[], None], log_fields: dict[str, Any] | None = None) -> None: ...


class InlineDispatcher:
    def submit(self, channel: str, send: Callable[[], None], log_fields: dict[str, Any] | None = None) -> None:
        deliver(channel, send, log_fields)


class BackgroundDispatcher:
    def __init__(self, max_workers: int):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="automation-outbound")

    def submit(self, channel: str, send: Callable[[], None], log_fields: dict[str, Any] | None = None) -> None:
        future = self._executor.submit(deliver, channel, send, log_fields)
        future.add_done_callback(partial(self._report_crash, channel))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _report_crash(self, channel: str, future: Future[bool]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("automation_outbound_crashed", extra={"channel": channel, "error": str(exc)})


@dataclass
class OutboundTransports:
    webhook: WebhookSender
    whatsapp: WhatsAppSender
    mail: SmtpMailSender
    dispatcher: Dispatcher


def build_outbound_transports(settings: Settings) -> OutboundTransports:
    client = httpx.Client(timeout=settings.outbound_timeout_seconds)
    dispatcher: Dispatcher
    if settings.outbound_max_workers > 0:
        dispatcher = BackgroundDispatcher(settings.outbound_max_workers)
    else:
        dispatcher = InlineDispatcher()
    return OutboundTransports(
        webhook=WebhookSender(client),
        whatsapp=WhatsAppSender(client),
        mail=SmtpMailSender(settings.outbound_timeout_seconds),
        dispatcher=dispatcher,
    )
