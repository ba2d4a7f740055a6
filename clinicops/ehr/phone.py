import re

_NON_DIGIT_RE = re.compile(r"\D")


def normalize_jp_phone(value: str) -> str:
    """
    "+81 90-1234-5678" / "819012345678" / "9012345678" → "09012345678"

    只保留数字。
    "0080" / "0090" 开头是手机号前面多打了 0，改回 080 / 090；
    其他 "00" 开头视为国际拨号前缀，去掉；
    国际区号 81 换成 0（位数不够 11 位的不算区号）；
    以 7 / 8 / 9 开头且缺少 0 的补上 0。
    """
    digits = _NON_DIGIT_RE.sub("", value or "")
    if not digits:
        return ""
    if digits.startswith(("0080", "0090")):
        digits = digits[1:]
    elif digits.startswith("00"):
        digits = digits[2:]
    if digits.startswith("81") and len(digits) >= 11:
        digits = "0" + digits[2:]
    if not digits.startswith("0") and digits[0] in "789":
        digits = "0" + digits
    return digits
