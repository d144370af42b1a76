import re

_E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")


def normalize_phone_e164(phone: str, default_country_code: str = "+1") -> str:
    """Normalize phone numbers to a basic E.164 form.

    Formatting characters ("+1 (555) 123-4567") are stripped. North American
    numbers are assumed for bare national input; falls back to the cleaned value
    if we cannot infer a country.
    """
    if not phone:
        return ""
    raw = re.sub(r"[^\d+]", "", phone)
    if raw.startswith("+"):
        return "+" + raw[1:].replace("+", "")
    if raw.startswith("00"):
        return "+" + raw[2:]
    cc = default_country_code if default_country_code.startswith("+") else ""
    if cc == "+1":
        if len(raw) == 10:
            return cc + raw
        if len(raw) == 11 and raw.startswith("1"):
            return "+" + raw
    elif cc and raw.startswith("0") and len(raw) >= 9:
        # Trunk-prefixed national numbers (e.g. 0XXXXXXXXX -> +CCXXXXXXXXX)
        return cc + raw[1:]
    return raw


def is_valid_e164(phone: str) -> bool:
    return bool(phone) and bool(_E164_RE.match(phone))


def mask_phone(phone: str, visible_digits: int = 2) -> str:
    if not phone:
        return ""
    normalized = normalize_phone_e164(phone)
    if len(normalized) <= visible_digits:
        return normalized
    masked_portion = "*" * max(len(normalized) - visible_digits, 0)
    return masked_portion + normalized[-visible_digits:]
