"""
ReminderDispatcher — 按提醒规则给预约患者推送提醒。

由 Celery beat 每 5 分钟调用一次（tasks.dispatch_reminders），也可以通过
GET /api/cron/reminders/ 手动触发。每次调用：

  1. 取所有启用的规则
  2. 不在发送窗口内的规则跳过
  3. 目标日 = JST 今天 + target_day_offset
  4. 逐条预约：没有 LINE UID → no_uid；今天已发过 → skipped
  5. 发送成功才写 reminder_sent_log；失败不写，下一次调用还会重试

同一窗口内多次调用也只会成功发送一次，靠的是 reminder_sent_log 的唯一约束，
不依赖任何进程内锁。
"""

import logging
from dataclasses import asdict, dataclass

from django.db import IntegrityError, transaction
from django.utils import timezone

from ..messaging import get_messenger
from ..models import MessageLog, Patient, ReminderRule, ReminderSentLog, Reservation
from ..repository import TenantRepository
from .flex import build_reminder_flex
from .timeutil import add_days, get_jst_today, is_in_send_window

logger = logging.getLogger(__name__)

_reservations = TenantRepository(Reservation)
_patients = TenantRepository(Patient)
_sent_logs = TenantRepository(ReminderSentLog)
_message_logs = TenantRepository(MessageLog)


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    no_uid: int = 0
    skipped: int = 0
    rules_checked: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def render_reminder(rule: ReminderRule, reservation: Reservation, patient_name: str = "") -> dict:
    """
    flex → 结构化卡片
    text → message_template 里替换 {name} {date} {time} {patient_id}
           {date} = "2026/2/18"，{time} = "10:00"
    """
    date_str = str(reservation.reserved_date)
    if rule.message_format == "flex":
        return build_reminder_flex(date_str, reservation.reserved_time, day_offset=rule.target_day_offset)

    y, m, d = date_str.split("-")
    text = rule.message_template or ""
    text = text.replace("{name}", patient_name or "")
    text = text.replace("{date}", f"{y}/{int(m)}/{int(d)}")
    text = text.replace("{time}", reservation.reserved_time[:5])
    text = text.replace("{patient_id}", reservation.patient_id or "")
    return {"type": "text", "text": text}


class ReminderDispatcher:

    def __init__(self, messenger=None):
        self.messenger = messenger or get_messenger()

    def dispatch(self, now=None) -> DispatchResult:
        """
        规则加载失败（DB 不可用）直接抛出；单个收件人的失败只计数。
        """
        now = now or timezone.now()
        today = get_jst_today(now)
        result = DispatchResult()

        rules = list(ReminderRule.objects.filter(is_enabled=True).order_by("id"))

        for rule in rules:
            result.rules_checked += 1
            if not is_in_send_window(rule.send_hour, rule.send_minute, now):
                continue

            target_date = add_days(today, rule.target_day_offset)
            logger.info(
                "[reminder] rule=%s tenant=%s 进入发送窗口，目标日=%s",
                rule.id, rule.tenant_id, target_date,
            )
            self._dispatch_rule(rule, today, target_date, result)

        logger.info(
            "[reminder] 完成 rules=%d sent=%d failed=%d no_uid=%d skipped=%d",
            result.rules_checked, result.sent, result.failed, result.no_uid, result.skipped,
        )
        return result

    # ── 内部 ───────────────────────────────────────────────────────────────

    def _dispatch_rule(self, rule, today: str, target_date: str, result: DispatchResult) -> None:
        tenant_id = rule.tenant_id

        reservations = list(
            _reservations.filter(tenant_id, reserved_date=target_date)
            .exclude(status="canceled")
            .order_by("reserved_time", "id")
        )
        if not reservations:
            return

        patients = {
            p.patient_id: p
            for p in _patients.filter(tenant_id, patient_id__in={r.patient_id for r in reservations})
        }
        already_sent = set(
            _sent_logs.filter(tenant_id, rule=rule, sent_date=today)
            .values_list("reservation_id", flat=True)
        )

        for reservation in reservations:
            patient = patients.get(reservation.patient_id)
            handle = patient.line_id if patient else None
            if not handle:
                result.no_uid += 1
                continue

            if reservation.reserve_id in already_sent:
                result.skipped += 1
                continue

            # 单条预约的渲染/发送/记日志出错只计 failed，不影响后面的预约
            try:
                self._send_one(rule, reservation, patient, today, result)
            except Exception as exc:
                logger.warning(
                    "[reminder] 发送异常 rule=%s reservation=%s: %s",
                    rule.id, reservation.reserve_id, exc,
                )
                result.failed += 1

    def _send_one(self, rule, reservation, patient, today: str, result: DispatchResult) -> None:
        tenant_id = rule.tenant_id
        handle = patient.line_id

        message = render_reminder(rule, reservation, patient.name)
        send_result = self.messenger.send(handle, [message], tenant_id)
        if not send_result.ok:
            logger.warning(
                "[reminder] 发送失败 rule=%s reservation=%s: %s",
                rule.id, reservation.reserve_id, send_result.error,
            )
            result.failed += 1
            return

        try:
            with transaction.atomic():
                _sent_logs.create(
                    tenant_id,
                    rule=rule,
                    reservation_id=reservation.reserve_id,
                    patient_id=reservation.patient_id,
                    sent_date=today,
                )
        except IntegrityError:
            # 并发调用已经写过
            result.skipped += 1
            return

        _message_logs.create(
            tenant_id,
            patient_id=reservation.patient_id,
            line_uid=handle,
            event_type="reminder",
            message_type=message["type"],
            content=message.get("text") or message.get("altText", ""),
            status="sent",
            campaign_id=f"reminder_rule_{rule.id}",
        )
        result.sent += 1
