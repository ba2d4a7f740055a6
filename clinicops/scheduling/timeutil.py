"""
时间工具：发送窗口判定 + 日期/延迟计算。

所有业务时间都按 JST（固定 UTC+9，无夏令时）计算，与服务器时区无关。
日期运算一律在 datetime.date 上做，不在时刻上加减，避免月末/年末的时区偏移问题。
"""

from datetime import date, datetime, timedelta, timezone as dt_timezone

from django.utils import timezone

JST = dt_timezone(timedelta(hours=9), name="JST")

# 发送窗口宽度（分钟）
SEND_WINDOW_MINUTES = 15
MINUTES_PER_DAY = 24 * 60


def _now(now=None) -> datetime:
    return now if now is not None else timezone.now()


def to_jst(moment: datetime) -> datetime:
    return moment.astimezone(JST)


# ── TimeWindowScheduler ────────────────────────────────────────────────────

def is_in_send_window(target_hour: int, target_minute: int, now=None) -> bool:
    """
    now（JST）是否落在 (target - 15分, target] 内。

    按 1440 取模，所以 0:00 的窗口是前一天 23:46 到 0:00。
    """
    jst = to_jst(_now(now))
    now_minutes = jst.hour * 60 + jst.minute
    target_minutes = target_hour * 60 + target_minute
    diff = (target_minutes - now_minutes) % MINUTES_PER_DAY
    return diff < SEND_WINDOW_MINUTES


# ── DelayResolver ──────────────────────────────────────────────────────────

def get_jst_today(now=None) -> str:
    """JST 当天日期，"YYYY-MM-DD"。"""
    return to_jst(_now(now)).date().isoformat()


def add_days(date_str: str, days: int) -> str:
    return (date.fromisoformat(date_str) + timedelta(days=days)).isoformat()


def add_one_day(date_str: str) -> str:
    return add_days(date_str, 1)


def format_reservation_time(date_str: str, start_time: str) -> str:
    """
    "2026-02-18", "08:00:00" → "2026/2/18 08:00-8:15"

    结束时间 = 开始 + 15 分钟；结束的小时不补零（既有消息格式，保持原样）。
    跨零点时回绕："23:50:00" → "23:50-0:05"。
    """
    y, m, d = date_str.split("-")
    hhmm = start_time[:5]
    hh, mm = (int(part) for part in hhmm.split(":"))
    end = (hh * 60 + mm + 15) % (24 * 60)
    return f"{y}/{int(m)}/{int(d)} {hhmm}-{end // 60}:{end % 60:02d}"


def calculate_next_send_at(delay_type: str, delay_value: int, send_time: str | None = None,
                           base: datetime | None = None) -> datetime:
    """
    步骤的下一次发送时刻（aware datetime，UTC）。

    minutes / hours：直接加到 base 上
    days：在 JST 日历上加天数；有 send_time（"HH:MM"）时固定到当天该 JST 时刻
    未知 delay_type：原样返回 base
    """
    base = _now(base)
    value = int(delay_value or 0)

    if delay_type == "minutes":
        return base + timedelta(minutes=value)
    if delay_type == "hours":
        return base + timedelta(hours=value)
    if delay_type == "days":
        jst = to_jst(base)
        target_day = jst.date() + timedelta(days=value)
        if send_time:
            hh, mm = (int(part) for part in send_time[:5].split(":"))
            local = datetime(target_day.year, target_day.month, target_day.day, hh, mm, tzinfo=JST)
        else:
            local = datetime.combine(target_day, jst.timetz())
        return local.astimezone(dt_timezone.utc)

    return base
