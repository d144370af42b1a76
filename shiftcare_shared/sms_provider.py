from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .phone_utils import mask_phone, normalize_phone_e164

logger = logging.getLogger("shiftcare.sms")

DEFAULT_TEMPLATE = "Your ShiftCare verification code is {code}"


class SmsDeliveryError(RuntimeError):
    """Raised when no backend accepted the message."""


class SmsBackend(Protocol):
    def send(self, phone: str, message: str) -> None:  # pragma: no cover - interface
        ...


@dataclass
class LogBackend:
    """Development backend: writes a masked line to the log instead of sending."""

    def send(self, phone: str, message: str) -> None:
        logger.info("SMS (log backend) to=%s msg=%s", mask_phone(phone), _mask_code_in_message(message))


@dataclass
class HttpBackend:
    url: str
    auth_token: Optional[str] = None
    sender_name: Optional[str] = None
    timeout: float = 5.0

    def send(self, phone: str, message: str) -> None:
        if not (self.url or "").strip():
            raise SmsDeliveryError("OTP_SMS_HTTP_URL must be configured for the http SMS provider")
        payload = {"to": normalize_phone_e164(phone), "message": message}
        if self.sender_name:
            payload["sender"] = self.sender_name
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        _send_with_retry(
            lambda: httpx.post(self.url, json=payload, headers=headers, timeout=self.timeout),
            backend_name="http",
        )


@dataclass
class TwilioBackend:
    """Twilio Programmable Messaging (form-encoded POST with basic auth)."""

    account_sid: str
    auth_token: str
    from_number: str
    base_url: str = "https://api.twilio.com"
    timeout: float = 5.0

    def send(self, phone: str, message: str) -> None:
        if not (self.account_sid and self.auth_token and self.from_number):
            raise SmsDeliveryError("Twilio backend not fully configured")
        url = f"{self.base_url.rstrip('/')}/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        data = {"To": normalize_phone_e164(phone), "From": self.from_number, "Body": message}
        _send_with_retry(
            lambda: httpx.post(url, data=data, auth=(self.account_sid, self.auth_token), timeout=self.timeout),
            backend_name="twilio",
        )


@dataclass
class SmsProvider:
    backend: SmsBackend
    template: str = DEFAULT_TEMPLATE
    fallback: Optional[SmsBackend] = None

    def build_message(self, code: str) -> str:
        try:
            return (self.template or DEFAULT_TEMPLATE).format(code=code)
        except (KeyError, IndexError, ValueError):
            return DEFAULT_TEMPLATE.format(code=code)

    def send_code(self, phone: str, code: str) -> None:
        normalized_phone = normalize_phone_e164(phone)
        msg = self.build_message(code)
        try:
            self.backend.send(normalized_phone, msg)
            logger.debug(
                "OTP dispatched via %s to=%s code=%s",
                self.backend.__class__.__name__,
                mask_phone(normalized_phone),
                _mask_code(code),
            )
            return
        except Exception as exc:
            logger.warning(
                "Primary SMS backend %s failed for %s (%s)",
                self.backend.__class__.__name__,
                mask_phone(normalized_phone),
                exc,
            )
            if self.fallback is None:
                raise SmsDeliveryError(str(exc)) from exc
        try:
            self.fallback.send(normalized_phone, msg)
        except Exception as exc:
            raise SmsDeliveryError(str(exc)) from exc
        logger.debug(
            "OTP dispatched via fallback %s to=%s",
            self.fallback.__class__.__name__,
            mask_phone(normalized_phone),
        )


def build_backend(
    name: str,
    *,
    http_url: str = "",
    http_auth_token: str = "",
    sender_name: str = "",
    twilio_account_sid: str = "",
    twilio_auth_token: str = "",
    twilio_from_number: str = "",
) -> SmsBackend:
    provider = (name or "log").strip().lower()
    if provider == "log":
        return LogBackend()
    if provider == "http":
        return HttpBackend(url=http_url, auth_token=http_auth_token or None, sender_name=sender_name or None)
    if provider == "twilio":
        return TwilioBackend(
            account_sid=twilio_account_sid,
            auth_token=twilio_auth_token,
            from_number=twilio_from_number,
        )
    raise ValueError(f"Unsupported OTP_SMS_PROVIDER {name!r}")


def _mask_code(code: str) -> str:
    if not code:
        return ""
    digits = re.sub(r"\D", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]


def _mask_code_in_message(message: str) -> str:
    if not message:
        return ""
    return re.sub(r"(\d{2,})", lambda m: _mask_code(m.group(0)), message)


def _send_with_retry(callable_fn, backend_name: str, max_attempts: int = 3) -> None:
    delay = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            res = callable_fn()
            try:
                res.raise_for_status()
                return
            finally:
                res.close()
        except (httpx.HTTPError, SmsDeliveryError) as exc:
            if attempt == max_attempts:
                raise SmsDeliveryError(f"{backend_name} SMS failed after {attempt} attempts: {exc}") from exc
            logger.warning("%s SMS attempt %s failed: %s", backend_name, attempt, exc)
            time.sleep(delay)
            delay *= 2
