"""Outbound transports for rendered turn sheets.

One transport per delivery channel. The email channel is a single opaque
transport whose backend (SMTP, forwardemail HTTP API, or an in-process fake)
is a deployment setting.

Transports raise ``TransportTimeout`` for transient network stalls and
``DeliveryFailed`` for everything else; the dispatcher counts both against
the channel's attempt budget. Sends may be repeated after a crash, so
recipients can occasionally see a duplicate.
"""

from __future__ import annotations

import base64
import smtplib
import socket
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import DeliveryConfig, settings
from ..db.games import DeliveryChannel
from ..errors import DeliveryFailed, TransportTimeout
from ..logging import logger


@dataclass(frozen=True)
class DeliveryPackage:
    """Everything a transport needs to send one sheet."""

    turn_sheet_id: int
    code: str
    channel: str
    artifact: bytes
    account_name: str
    email: str | None = None
    postal_address: dict[str, Any] | None = None
    game_name: str | None = None
    turn_number: int = 0
    deadline: datetime | None = None

    @property
    def filename(self) -> str:
        return f"turn-sheet-{self.code}.pdf"

    @property
    def subject(self) -> str:
        return f"{self.game_name or 'Play by Mail'}: your turn {self.turn_number} sheet"

    def body_text(self) -> str:
        deadline = f"{self.deadline:%Y-%m-%d %H:%M} UTC" if self.deadline else "the deadline"
        return (
            f"Hello {self.account_name},\n\n"
            f"Your turn sheet for turn {self.turn_number} is attached. "
            f"Print it, mark your choices and return it before {deadline}.\n\n"
            f"Turn Sheet Code: {self.code}\n"
        )


class Transport(Protocol):
    channel: str

    def send(self, package: DeliveryPackage) -> str | None: ...


_http_retry = retry(
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    retry=retry_if_exception_type(httpx.TimeoutException),
    reraise=True,
)


def _raise_for_status(response: httpx.Response, service: str) -> None:
    if 200 <= response.status_code < 300:
        return
    body = response.text[:500] if response.text else None
    raise DeliveryFailed(f"{service} returned {response.status_code}: {body}", status=response.status_code)


class SMTPEmailTransport:
    channel = DeliveryChannel.email.value

    def __init__(self, config: DeliveryConfig) -> None:
        self.config = config

    def send(self, package: DeliveryPackage) -> str | None:
        if not package.email:
            raise DeliveryFailed("account has no email address", turn_sheet_id=package.turn_sheet_id)
        message = EmailMessage()
        message["From"] = self.config.sender_address
        message["To"] = package.email
        message["Subject"] = package.subject
        message.set_content(package.body_text())
        message.add_attachment(
            package.artifact, maintype="application", subtype="pdf", filename=package.filename
        )
        try:
            with smtplib.SMTP(
                self.config.smtp_host, self.config.smtp_port, timeout=self.config.request_timeout_seconds
            ) as client:
                if self.config.smtp_use_tls:
                    client.starttls()
                if self.config.smtp_username:
                    client.login(self.config.smtp_username, self.config.smtp_password or "")
                client.send_message(message)
        except (socket.timeout, TimeoutError) as exc:
            raise TransportTimeout(f"smtp timeout: {exc}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryFailed(f"smtp send failed: {exc}") from exc
        return None


class ForwardEmailTransport:
    channel = DeliveryChannel.email.value

    def __init__(self, config: DeliveryConfig, client: httpx.Client | None = None) -> None:
        if not config.forwardemail_api_key:
            raise ValueError("forwardemail transport requires FORWARDEMAIL_API_KEY")
        self.config = config
        self.client = client or httpx.Client(
            base_url=config.forwardemail_base_url,
            auth=(config.forwardemail_api_key, ""),
            timeout=config.request_timeout_seconds,
        )

    @_http_retry
    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        return self.client.post("/v1/emails", json=payload)

    def send(self, package: DeliveryPackage) -> str | None:
        if not package.email:
            raise DeliveryFailed("account has no email address", turn_sheet_id=package.turn_sheet_id)
        payload = {
            "from": self.config.sender_address,
            "to": [package.email],
            "subject": package.subject,
            "text": package.body_text(),
            "attachments": [
                {
                    "filename": package.filename,
                    "content": base64.b64encode(package.artifact).decode("ascii"),
                    "encoding": "base64",
                    "contentType": "application/pdf",
                }
            ],
        }
        try:
            response = self._post(payload)
        except httpx.TimeoutException as exc:
            raise TransportTimeout(f"forwardemail timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailed(f"forwardemail request failed: {exc}") from exc
        _raise_for_status(response, "forwardemail")
        try:
            return response.json().get("id")
        except ValueError:
            return None


@dataclass
class FakeEmailTransport:
    """Records sends in memory; used in development and tests."""

    channel: str = DeliveryChannel.email.value
    sent: list[DeliveryPackage] = field(default_factory=list)

    def send(self, package: DeliveryPackage) -> str | None:
        self.sent.append(package)
        logger.info("fake_email_sent", code=package.code, to=package.email)
        return f"fake-{len(self.sent)}"


class PhysicalPostTransport:
    """Hands the PDF to a print-and-mail HTTP API."""

    channel = DeliveryChannel.physical_post.value

    def __init__(self, config: DeliveryConfig, client: httpx.Client | None = None) -> None:
        if not config.physical_post_api_url:
            raise ValueError("physical post transport requires PHYSICAL_POST_API_URL")
        headers = {}
        if config.physical_post_api_key:
            headers["Authorization"] = f"Bearer {config.physical_post_api_key}"
        self.client = client or httpx.Client(
            base_url=config.physical_post_api_url,
            headers=headers,
            timeout=config.request_timeout_seconds,
        )

    @_http_retry
    def _post(self, data: dict[str, Any], files: dict[str, Any]) -> httpx.Response:
        return self.client.post("/letters", data=data, files=files)

    def send(self, package: DeliveryPackage) -> str | None:
        if not package.postal_address:
            raise DeliveryFailed("account has no postal address", turn_sheet_id=package.turn_sheet_id)
        data = {
            "recipient_name": package.account_name,
            "reference": package.code,
            **{f"address_{key}": str(value) for key, value in package.postal_address.items()},
        }
        files = {"file": (package.filename, package.artifact, "application/pdf")}
        try:
            response = self._post(data, files)
        except httpx.TimeoutException as exc:
            raise TransportTimeout(f"print api timeout: {exc}") from exc
        except httpx.HTTPError as exc:
            raise DeliveryFailed(f"print api request failed: {exc}") from exc
        _raise_for_status(response, "print api")
        try:
            return response.json().get("id")
        except ValueError:
            return None


class PhysicalLocalTransport:
    """Writes the PDF into a local print spool directory."""

    channel = DeliveryChannel.physical_local.value

    def __init__(self, spool_dir: str | Path) -> None:
        self.spool_dir = Path(spool_dir)

    def send(self, package: DeliveryPackage) -> str | None:
        target = self.spool_dir / package.filename
        try:
            self.spool_dir.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(".tmp")
            tmp.write_bytes(package.artifact)
            tmp.replace(target)
        except OSError as exc:
            raise DeliveryFailed(f"could not spool {target}: {exc}") from exc
        return str(target)


def build_email_transport(config: DeliveryConfig) -> Transport:
    if config.email_transport == "smtp":
        return SMTPEmailTransport(config)
    if config.email_transport == "forwardemail":
        return ForwardEmailTransport(config)
    if config.email_transport == "fake":
        return FakeEmailTransport()
    raise ValueError(f"Unknown email transport: {config.email_transport}")


@lru_cache(maxsize=1)
def get_transports() -> dict[str, Transport]:
    """Channel name to transport, for every channel this deployment can serve."""
    config = settings.delivery_config
    transports: dict[str, Transport] = {
        DeliveryChannel.email.value: build_email_transport(config),
        DeliveryChannel.physical_local.value: PhysicalLocalTransport(config.physical_local_dir),
    }
    if config.physical_post_api_url:
        transports[DeliveryChannel.physical_post.value] = PhysicalPostTransport(config)
    return transports
