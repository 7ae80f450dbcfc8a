"""联系方式规范化"""

import re

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None) -> str | None:
    """规范化为 E.164 格式

    10 位数字按北美号码补 +1；11 位且以 1 开头补 +；
    其余保留原有 + 前缀或补 +。无数字时返回 None。
    """
    if not phone:
        return None
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        return None
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}"


def normalize_email(email: str | None) -> str | None:
    """去除首尾空白并转小写，不含 @ 时返回 None"""
    if not email:
        return None
    email = email.strip().lower()
    if "@" not in email:
        return None
    return email
