from prometheus_client import Counter, Histogram

REQUESTS = Counter("http_requests_total", "HTTP requests", ["method", "path", "status"])
REQ_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10),
)
OTP_ISSUED = Counter("otp_challenges_issued_total", "OTP challenges issued", ["flow"])
OTP_VERIFICATIONS = Counter("otp_verifications_total", "OTP verification outcomes", ["flow", "result"])
OTP_SWEPT = Counter("otp_challenges_swept_total", "Expired OTP challenges removed by the sweeper")
OTP_THROTTLED = Counter("otp_requests_throttled_total", "OTP code requests refused by the send throttle", ["flow"])
