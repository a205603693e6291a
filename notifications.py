"""
Outbound SMS / email notices.

Delivery is fire-and-forget: ``Notifier.deliver`` logs failures and never
raises, so a provider outage cannot undo a workflow step that is already
persisted.
"""
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Dict, Optional

import requests

import settings

logger = logging.getLogger(__name__)


@dataclass
class Notice:
    channel: str  # "sms" | "email"
    recipient: str
    message: str
    subject: Optional[str] = None


class SmsGateway:
    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None,
                 sender: Optional[str] = None, timeout: Optional[float] = None):
        self.api_url = api_url if api_url is not None else settings.SMS_API_URL
        self.api_key = api_key if api_key is not None else settings.SMS_API_KEY
        self.sender = sender or settings.SMS_SENDER
        self.timeout = timeout or settings.EXTERNAL_TIMEOUT_SECONDS

    def send(self, phone: str, message: str) -> None:
        if not self.api_url:
            logger.info("[DEV] SMS to %s: %s", phone, message)
            return
        resp = requests.post(
            self.api_url,
            json={"to": phone, "from": self.sender, "message": message},
            headers={"Authorization": f"Bearer {self.api_key}"} if self.api_key else {},
            timeout=self.timeout,
        )
        resp.raise_for_status()


class Mailer:
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, user: Optional[str] = None,
                 password: Optional[str] = None, use_tls: Optional[bool] = None, from_addr: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.host = host if host is not None else settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.user = user if user is not None else settings.SMTP_USER
        self.password = password if password is not None else settings.SMTP_PASS
        self.use_tls = settings.SMTP_TLS if use_tls is None else use_tls
        self.from_addr = from_addr or settings.MAIL_FROM
        self.timeout = timeout or settings.EXTERNAL_TIMEOUT_SECONDS

    def send(self, to_addr: str, subject: str, body: str) -> None:
        if not self.host:
            logger.info("[DEV] Email to %s (%s): %s", to_addr, subject, body)
            return
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_addr
        msg["To"] = to_addr
        msg.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.user:
                server.login(self.user, self.password or "")
            server.send_message(msg)


class Notifier:
    def __init__(self, sms: Optional[SmsGateway] = None, mailer: Optional[Mailer] = None):
        self.sms = sms or SmsGateway()
        self.mailer = mailer or Mailer()

    def deliver(self, notice: Notice) -> bool:
        if not notice.recipient:
            logger.warning("Dropping %s notice without recipient", notice.channel)
            return False
        try:
            if notice.channel == "sms":
                self.sms.send(notice.recipient, notice.message)
            elif notice.channel == "email":
                self.mailer.send(notice.recipient, notice.subject or "E-Waste Platform", notice.message)
            else:
                logger.warning("Unknown notice channel %s", notice.channel)
                return False
        except Exception as e:
            logger.warning("Failed to deliver %s notice to %s: %s", notice.channel, notice.recipient, e)
            return False
        return True


# ------------------ Notice builders ------------------
def request_accepted(request: Dict[str, Any], agency: Dict[str, Any]) -> Notice:
    return Notice("sms", request.get("contact_number"),
                  f"Your e-waste pickup request was accepted by {agency.get('name', 'the agency')}.")


def volunteer_assigned(request: Dict[str, Any], volunteer: Dict[str, Any]) -> list:
    when = request.get("pickup_date")
    when_text = when.strftime("%d %b %Y") if hasattr(when, "strftime") else str(when)
    return [
        Notice("sms", request.get("contact_number"),
               f"{volunteer.get('name', 'A volunteer')} will collect your e-waste on {when_text}."),
        Notice("sms", volunteer.get("phone"),
               f"New pickup assigned: {request.get('pickup_address')} on {when_text}."),
    ]


def pickup_code(request: Dict[str, Any], code: str) -> Notice:
    return Notice("sms", request.get("contact_number"),
                  f"Your pickup is on its way. Share code {code} with the volunteer to confirm handover.")


def request_rejected(request: Dict[str, Any], reason: Optional[str]) -> Notice:
    suffix = f" Reason: {reason}" if reason else ""
    return Notice("sms", request.get("contact_number"), f"Your e-waste pickup request was rejected.{suffix}")


def request_completed(request: Dict[str, Any], points: int) -> Notice:
    return Notice("sms", request.get("contact_number"),
                  f"Your e-waste has been processed. {points} points were added to your account.")


def capacity_alert(agency: Dict[str, Any], inventory: Dict[str, Any]) -> Notice:
    current = inventory.get("current_capacity", 0)
    total = inventory.get("total_capacity", 0)
    body = (
        f"Dear {agency.get('name', 'partner')},\n\n"
        f"Your inventory is now at {current}/{total} "
        f"({int(settings.CAPACITY_ALERT_RATIO * 100)}% full or more).\n"
        "Please take necessary actions to free up space.\n\n"
        "E-Waste Pickup Platform"
    )
    return Notice("email", agency.get("email"), body,
                  subject=f"Inventory Alert: {int(settings.CAPACITY_ALERT_RATIO * 100)}% Capacity Reached")
