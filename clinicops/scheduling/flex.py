"""
提醒用 LINE Flex 卡片（bubble）。

返回值可直接作为 messages 列表里的一个元素传给 Messenger.send()。
"""

from datetime import date

WEEKDAYS_JA = ["月", "火", "水", "木", "金", "土", "日"]

DEFAULT_COLORS = {
    "header_bg": "#E75A7C",
    "header_text": "#FFFFFF",
    "body_text": "#555555",
    "accent": "#E75A7C",
}

REMINDER_HEADERS = {0: "本日のご予約", 1: "明日のご予約"}
REMINDER_HEADER_DEFAULT = "ご予約のお知らせ"
REMINDER_NOTE = (
    "ご予約内容の変更・キャンセルはマイページよりお手続きください。"
)
PHONE_NOTICE = "予約時間枠の間に「090-」から始まる番号よりお電話いたします。"


def _time_range(start_time: str) -> tuple[str, str]:
    hhmm = start_time[:5]
    hh, mm = (int(part) for part in hhmm.split(":"))
    total = (hh * 60 + mm + 15) % (24 * 60)
    return hhmm, f"{total // 60:02d}:{total % 60:02d}"


def _text(text, **extra) -> dict:
    block = {"type": "text", "text": text, "wrap": True}
    block.update(extra)
    return block


def build_reminder_flex(date_str: str, start_time: str, colors: dict | None = None,
                        day_offset: int = 1) -> dict:
    """
    "2026-02-18", "10:00:00" →
    {"type": "flex", "altText": "【明日のご予約】2/18(水) 10:00〜10:15", "contents": {bubble}}

    标题随 day_offset 变化：0 → 本日のご予約，1 → 明日のご予約，其他 → ご予約のお知らせ
    """
    header = REMINDER_HEADERS.get(day_offset, REMINDER_HEADER_DEFAULT)
    palette = dict(DEFAULT_COLORS, **(colors or {}))
    day = date.fromisoformat(date_str)
    start, end = _time_range(start_time)
    date_label = f"{day.month}/{day.day}({WEEKDAYS_JA[day.weekday()]})"
    when = f"{date_label} {start}〜{end}"

    bubble = {
        "type": "bubble",
        "header": {
            "type": "box",
            "layout": "vertical",
            "backgroundColor": palette["header_bg"],
            "contents": [
                _text(header, weight="bold", size="lg", color=palette["header_text"]),
            ],
        },
        "body": {
            "type": "box",
            "layout": "vertical",
            "spacing": "md",
            "contents": [
                _text(when, weight="bold", size="xl", color=palette["accent"]),
                {"type": "separator"},
                _text(PHONE_NOTICE, size="sm", color=palette["body_text"]),
                _text(REMINDER_NOTE, size="sm", color=palette["body_text"]),
            ],
        },
    }

    return {
        "type": "flex",
        "altText": f"【{header}】{when}",
        "contents": bubble,
    }
