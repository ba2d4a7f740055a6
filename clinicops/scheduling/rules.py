"""
提醒规则的 CRUD 校验 + 默认文本消息。
"""

from ..exceptions import ValidationError

TIMING_TYPES = ("fixed_time", "before_hours")
MESSAGE_FORMATS = ("text", "flex")

REMINDER_RULE_FIELDS = (
    "name", "is_enabled", "timing_type", "send_hour", "send_minute",
    "target_day_offset", "message_format", "message_template",
)


def _as_int(value):
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def validate_reminder_rule(data: dict) -> dict:
    """
    校验提醒规则的创建/更新请求，返回清洗后的字段 dict。

    flex 格式的内容是结构化卡片，message_template 可以为空。

    Raises:
        ValidationError: 第一条错误作为 message，全部错误放在 detail.errors
    """
    errors = []

    name = (data.get("name") or "").strip()
    if not name:
        errors.append({"field": "name", "message": "ルール名は必須です"})

    send_hour = _as_int(data.get("send_hour"))
    if send_hour is None or not 0 <= send_hour <= 23:
        errors.append({"field": "send_hour", "message": "送信時刻（時）は 0〜23 で指定してください"})

    send_minute = _as_int(data.get("send_minute", 0))
    if send_minute is None or not 0 <= send_minute <= 59:
        errors.append({"field": "send_minute", "message": "送信時刻（分）は 0〜59 で指定してください"})

    timing_type = data.get("timing_type") or "fixed_time"
    if timing_type not in TIMING_TYPES:
        errors.append({"field": "timing_type", "message": f"timing_type が不正です: {timing_type}"})

    message_format = data.get("message_format") or "text"
    if message_format not in MESSAGE_FORMATS:
        errors.append({"field": "message_format", "message": f"message_format が不正です: {message_format}"})

    template = data.get("message_template") or ""
    if message_format == "text" and not template.strip():
        errors.append({"field": "message_template", "message": "テキスト形式ではメッセージ本文が必須です"})

    offset = _as_int(data.get("target_day_offset", 1))
    if offset is None:
        errors.append({"field": "target_day_offset", "message": "target_day_offset は整数で指定してください"})

    if errors:
        raise ValidationError(
            message=errors[0]["message"],
            code="INVALID_REMINDER_RULE",
            detail={"errors": errors},
        )

    return {
        "name": name,
        "is_enabled": bool(data.get("is_enabled", True)),
        "timing_type": timing_type,
        "send_hour": send_hour,
        "send_minute": send_minute,
        "target_day_offset": offset,
        "message_format": message_format,
        "message_template": template,
    }


def build_reminder_message(reservation_time: str) -> str:
    """规则模板为空时使用的默认文本提醒。"""
    return (
        "本日、診療のご予約がございます。\n"
        "\n"
        f"予約日時：{reservation_time}\n"
        "\n"
        "詳細につきましてはマイページよりご確認ください。\n"
        "\n"
        "診療は、予約時間枠の間に「090-」から始まる番号よりお電話いたします。\n"
        "知らない番号からの着信を受け取れない設定になっている場合は、\n"
        "事前にご連絡いただけますと幸いです。\n"
        "\n"
        "キャンセルや予約内容の変更をご希望の場合は、\n"
        "必ず事前にマイページよりお手続きをお願いいたします。"
    )
