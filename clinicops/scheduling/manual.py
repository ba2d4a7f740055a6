"""
手动一斉提醒：管理员指定日期，给当天所有未取消预约的患者发默认提醒文本。

GET  预览：对象患者列表 + 示例消息
POST 发送：逐人推送，返回每人的 sent / failed / no_uid
"""

import logging

from ..models import MessageLog, Patient, Reservation
from ..repository import TenantRepository
from .rules import build_reminder_message
from .timeutil import format_reservation_time

logger = logging.getLogger(__name__)

_reservations = TenantRepository(Reservation)
_patients = TenantRepository(Patient)
_message_logs = TenantRepository(MessageLog)

SAMPLE_TIME = "13:00:00"


def list_reminder_targets(tenant_id, date_str: str) -> list[dict]:
    reservations = list(
        _reservations.filter(tenant_id, reserved_date=date_str)
        .exclude(status="canceled")
        .order_by("reserved_time", "id")
    )
    patients = {
        p.patient_id: p
        for p in _patients.filter(tenant_id, patient_id__in={r.patient_id for r in reservations})
    }

    targets = []
    for reservation in reservations:
        patient = patients.get(reservation.patient_id)
        targets.append({
            "patient_id": reservation.patient_id,
            "patient_name": patient.name if patient else "",
            "line_id": (patient.line_id if patient else None) or None,
            "reserved_time": reservation.reserved_time,
            "formatted_time": format_reservation_time(date_str, reservation.reserved_time),
        })
    return targets


def preview_manual_reminders(tenant_id, date_str: str) -> dict:
    targets = list_reminder_targets(tenant_id, date_str)
    sendable = [t for t in targets if t["line_id"]]
    sample_time = (
        sendable[0]["formatted_time"] if sendable
        else format_reservation_time(date_str, SAMPLE_TIME)
    )
    return {
        "patients": targets,
        "summary": {
            "total": len(targets),
            "sendable": len(sendable),
            "no_uid": len(targets) - len(sendable),
        },
        "sample_message": build_reminder_message(sample_time),
    }


def send_manual_reminders(tenant_id, date_str: str, messenger) -> dict:
    results = []
    for target in list_reminder_targets(tenant_id, date_str):
        row = {"patient_id": target["patient_id"], "patient_name": target["patient_name"]}
        if not target["line_id"]:
            results.append(dict(row, status="no_uid"))
            continue

        text = build_reminder_message(target["formatted_time"])
        try:
            status = "sent" if messenger.send(target["line_id"], [{"type": "text", "text": text}], tenant_id).ok else "failed"
        except Exception as exc:
            logger.warning("[send-reminder] patient=%s 发送异常: %s", target["patient_id"], exc)
            status = "failed"

        _message_logs.create(
            tenant_id,
            patient_id=target["patient_id"],
            line_uid=target["line_id"],
            event_type="message",
            message_type="reminder",
            content=text,
            status=status,
        )
        results.append(dict(row, status=status))

    summary = {
        "total": len(results),
        "sent": sum(1 for r in results if r["status"] == "sent"),
        "failed": sum(1 for r in results if r["status"] == "failed"),
        "no_uid": sum(1 for r in results if r["status"] == "no_uid"),
    }
    logger.info("[send-reminder] tenant=%s date=%s %s", tenant_id, date_str, summary)
    return {"results": results, "summary": summary}
