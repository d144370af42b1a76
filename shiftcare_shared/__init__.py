from .otp import (
    Challenge,
    ChallengeAlreadyUsed,
    ChallengeExpired,
    ChallengeLocked,
    ChallengeNotFound,
    ChallengeStore,
    ChallengeSweeper,
    CodeMismatch,
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
    generate_otp_code,
    hash_code,
)
from .rate_limit import SlidingWindowLimiter, RedisRateLimiter
from .sms_provider import SmsDeliveryError, SmsProvider, build_backend
from .env import env_bool, env_int, env_list
from .phone_utils import normalize_phone_e164, is_valid_e164, mask_phone

__all__ = [
    "Challenge",
    "ChallengeAlreadyUsed",
    "ChallengeExpired",
    "ChallengeLocked",
    "ChallengeNotFound",
    "ChallengeStore",
    "ChallengeSweeper",
    "CodeMismatch",
    "IssueThrottle",
    "MemoryChallengeStore",
    "MemoryIssueThrottle",
    "OTPConfig",
    "OTPError",
    "OTPRateLimited",
    "OTPSendResult",
    "OTPVerifier",
    "RedisChallengeStore",
    "RedisIssueThrottle",
    "generate_otp_code",
    "hash_code",
    "SlidingWindowLimiter",
    "RedisRateLimiter",
    "SmsDeliveryError",
    "SmsProvider",
    "build_backend",
    "env_bool",
    "env_int",
    "env_list",
    "normalize_phone_e164",
    "is_valid_e164",
    "mask_phone",
]
