from __future__ import annotations

import logging
from dataclasses import dataclass

import redis
from fastapi import Request

from shiftcare_shared import (
    Challenge,
    ChallengeStore,
    ChallengeSweeper,
    IssueThrottle,
    MemoryChallengeStore,
    MemoryIssueThrottle,
    OTPConfig,
    OTPError,
    OTPRateLimited,
    OTPSendResult,
    OTPVerifier,
    RedisChallengeStore,
    RedisIssueThrottle,
    SmsDeliveryError,
    SmsProvider,
    build_backend,
    generate_otp_code,
    hash_code,
    is_valid_e164,
    mask_phone,
    normalize_phone_e164,
)

from ..config import settings
from ..errors import DeliveryFailure, InvalidPhone, MissingInput
from ..metrics import OTP_ISSUED, OTP_SWEPT, OTP_THROTTLED, OTP_VERIFICATIONS
from ..middleware_request_id import current_request_id

logger = logging.getLogger("shiftcare.otp")

FLOW_OPEN = "otp"
FLOW_HEALTHCARE = "healthcare"


def otp_config() -> OTPConfig:
    return OTPConfig(
        code_length=settings.OTP_CODE_LENGTH,
        ttl_secs=settings.OTP_TTL_SECS,
        max_attempts=settings.OTP_MAX_ATTEMPTS,
        storage_secret=settings.OTP_STORAGE_SECRET,
        sweep_interval_secs=settings.OTP_SWEEP_INTERVAL_SECS,
        send_max_per_phone=settings.OTP_SEND_MAX_PER_PHONE,
        send_max_per_client=settings.OTP_SEND_MAX_PER_CLIENT,
        send_window_secs=settings.OTP_SEND_WINDOW_SECS,
    )


def normalize_phone(raw: str | None) -> str:
    if raw is None or not raw.strip():
        raise MissingInput()
    phone = normalize_phone_e164(raw, settings.PHONE_DEFAULT_COUNTRY_CODE)
    if not is_valid_e164(phone):
        raise InvalidPhone()
    return phone


class OTPFlow:
    """One OTP flow: its own challenge namespace plus shared delivery settings."""

    def __init__(
        self,
        name: str,
        store: ChallengeStore,
        cfg: OTPConfig,
        sms: SmsProvider,
        throttle: IssueThrottle,
    ):
        self.name = name
        self.store = store
        self.cfg = cfg
        self.sms = sms
        self.throttle = throttle
        self.verifier = OTPVerifier(store, secret=cfg.storage_secret, max_attempts=cfg.max_attempts)

    def _send_limits(self, phone: str, client_id: str | None) -> list[tuple[str, int]]:
        limits = [(f"phone:{phone}", self.cfg.send_max_per_phone)]
        if client_id:
            limits.append((f"client:{client_id}", self.cfg.send_max_per_client))
        return limits

    def send(self, phone: str, client_id: str | None = None) -> OTPSendResult:
        try:
            self.throttle.acquire(self._send_limits(phone, client_id))
        except OTPRateLimited:
            OTP_THROTTLED.labels(self.name).inc()
            logger.warning(
                "OTP request throttled for %s on %s flow (request %s)",
                mask_phone(phone),
                self.name,
                current_request_id(),
            )
            raise
        code = generate_otp_code(self.cfg.code_length)
        challenge = self.store.issue(phone, hash_code(self.cfg.storage_secret, phone, code), self.cfg.ttl_secs)
        try:
            self.sms.send_code(phone, code)
        except SmsDeliveryError as exc:
            # Never leave a live code the user could not have received
            self.store.remove(phone, nonce=challenge.nonce)
            logger.error(
                "OTP delivery failed for %s on %s flow (request %s): %s",
                mask_phone(phone),
                self.name,
                current_request_id(),
                exc,
            )
            raise DeliveryFailure() from exc
        OTP_ISSUED.labels(self.name).inc()
        logger.info("OTP issued for %s on %s flow (request %s)", mask_phone(phone), self.name, current_request_id())
        return OTPSendResult(code=code, expires_at=challenge.expires_at, ttl_secs=self.cfg.ttl_secs)

    def verify(self, phone: str, code: str) -> Challenge:
        try:
            challenge = self.verifier.verify(phone, code)
        except OTPError as exc:
            OTP_VERIFICATIONS.labels(self.name, exc.code).inc()
            logger.info(
                "OTP rejected for %s on %s flow: %s (request %s)",
                mask_phone(phone),
                self.name,
                exc.code,
                current_request_id(),
            )
            raise
        OTP_VERIFICATIONS.labels(self.name, "ok").inc()
        logger.info("OTP verified for %s on %s flow (request %s)", mask_phone(phone), self.name, current_request_id())
        return challenge


@dataclass
class OTPRuntime:
    flows: dict[str, OTPFlow]
    sweeper: ChallengeSweeper


def build_sms_provider() -> SmsProvider:
    backend_kwargs = dict(
        http_url=settings.OTP_SMS_HTTP_URL,
        http_auth_token=settings.OTP_SMS_HTTP_AUTH_TOKEN,
        sender_name=settings.OTP_SMS_SENDER_NAME,
        twilio_account_sid=settings.TWILIO_ACCOUNT_SID,
        twilio_auth_token=settings.TWILIO_AUTH_TOKEN,
        twilio_from_number=settings.TWILIO_FROM_NUMBER,
    )
    backend = build_backend(settings.OTP_SMS_PROVIDER, **backend_kwargs)
    fallback = None
    if settings.OTP_SMS_FALLBACK_PROVIDER.strip():
        fallback = build_backend(settings.OTP_SMS_FALLBACK_PROVIDER, **backend_kwargs)
    return SmsProvider(backend=backend, template=settings.OTP_SMS_TEMPLATE, fallback=fallback)


def build_store(namespace: str) -> ChallengeStore:
    backend = (settings.OTP_STORE_BACKEND or "memory").strip().lower()
    if backend == "memory":
        return MemoryChallengeStore()
    if backend == "redis":
        client = redis.from_url(settings.REDIS_URL)
        return RedisChallengeStore(client, prefix=f"{settings.OTP_REDIS_PREFIX}:{namespace}")
    raise RuntimeError(f"Unsupported OTP_STORE_BACKEND {backend!r}")


def build_throttle(namespace: str, cfg: OTPConfig) -> IssueThrottle:
    backend = (settings.OTP_STORE_BACKEND or "memory").strip().lower()
    if backend == "redis":
        client = redis.from_url(settings.REDIS_URL)
        return RedisIssueThrottle(
            client,
            prefix=f"{settings.OTP_REDIS_PREFIX}:{namespace}:req",
            window_secs=cfg.send_window_secs,
        )
    return MemoryIssueThrottle(window_secs=cfg.send_window_secs)


def _count_swept(removed: int) -> None:
    if removed:
        OTP_SWEPT.inc(removed)


def build_otp_runtime() -> OTPRuntime:
    cfg = otp_config()
    sms = build_sms_provider()
    flows = {
        name: OTPFlow(name, build_store(name), cfg, sms, build_throttle(name, cfg))
        for name in (FLOW_OPEN, FLOW_HEALTHCARE)
    }
    sweeper = ChallengeSweeper(
        [flow.store for flow in flows.values()],
        interval_secs=cfg.sweep_interval_secs,
        on_sweep=_count_swept,
    )
    return OTPRuntime(flows=flows, sweeper=sweeper)


def open_flow(request: Request) -> OTPFlow:
    return request.app.state.otp.flows[FLOW_OPEN]


def healthcare_flow(request: Request) -> OTPFlow:
    return request.app.state.otp.flows[FLOW_HEALTHCARE]


def client_address(request: Request) -> str | None:
    return request.client.host if request.client else None
