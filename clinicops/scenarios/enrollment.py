"""
步骤场景的报名（enrollment）管理。

触发入口：
  check_follow_trigger   加好友
  check_tag_trigger      打上某个标签
  check_keyword_trigger  发送关键词（exact / partial / regex）
  exit_all_enrollments   退出患者所有进行中的场景（例如拉黑）

状态推进（StepExecutor 使用）：
  jump_to_step / advance_to_next_step / mark_completed
"""

import logging
import re

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from ..models import StepEnrollment, StepItem, StepScenario
from ..repository import TenantRepository
from ..scheduling.timeutil import calculate_next_send_at

logger = logging.getLogger(__name__)

_scenarios = TenantRepository(StepScenario)
_items = TenantRepository(StepItem)
_enrollments = TenantRepository(StepEnrollment)


def _next_send_at(step: StepItem, now):
    # condition 步骤不等待，下一次 tick 立即判定
    if step.step_type == "condition":
        return now
    return calculate_next_send_at(step.delay_type, step.delay_value, step.send_time, base=now)


def enroll_patient(tenant_id, scenario_id, patient_id: str, line_uid: str | None = None, now=None):
    """
    报名到场景的第一个步骤。

    场景没有步骤 → 不报名，返回 None。
    已经报名过（唯一约束冲突）→ 忽略，返回 None。
    """
    now = now or timezone.now()
    scenario = _scenarios.first(tenant_id, id=scenario_id)
    if scenario is None:
        return None

    first_step = _items.filter(tenant_id, scenario=scenario).order_by("sort_order", "id").first()
    if first_step is None:
        logger.info("[step-enrollment] scenario=%s 没有步骤，跳过 patient=%s", scenario_id, patient_id)
        return None

    try:
        with transaction.atomic():
            enrollment = _enrollments.create(
                tenant_id,
                scenario=scenario,
                patient_id=patient_id,
                line_uid=line_uid or None,
                current_step_order=first_step.sort_order,
                status="active",
                next_send_at=_next_send_at(first_step, now),
            )
    except IntegrityError:
        logger.info("[step-enrollment] patient=%s 已在 scenario=%s 中，忽略", patient_id, scenario_id)
        return None

    _scenarios.update(tenant_id, {"id": scenario.id}, total_enrolled=F("total_enrolled") + 1)
    logger.info("[step-enrollment] patient=%s 报名 scenario=%s", patient_id, scenario_id)
    return enrollment


# ── 触发器 ─────────────────────────────────────────────────────────────────

def _enabled(tenant_id, trigger_type: str, **lookups):
    return _scenarios.filter(tenant_id, is_enabled=True, trigger_type=trigger_type, **lookups).order_by("id")


def check_follow_trigger(tenant_id, patient_id: str, line_uid: str | None = None, now=None) -> int:
    enrolled = 0
    for scenario in _enabled(tenant_id, "follow"):
        if enroll_patient(tenant_id, scenario.id, patient_id, line_uid, now=now):
            enrolled += 1
    return enrolled


def check_tag_trigger(tenant_id, patient_id: str, tag_id: int, line_uid: str | None = None, now=None) -> int:
    enrolled = 0
    for scenario in _enabled(tenant_id, "tag", trigger_tag_id=tag_id):
        if enroll_patient(tenant_id, scenario.id, patient_id, line_uid, now=now):
            enrolled += 1
    return enrolled


def keyword_matches(keyword: str, match_type: str, text: str) -> bool:
    """
    exact    去掉首尾空白后完全一致
    partial  包含
    regex    re.search；非法正则视为不匹配
    """
    if not keyword:
        return False
    if match_type == "partial":
        return keyword in text
    if match_type == "regex":
        try:
            return re.search(keyword, text) is not None
        except re.error as exc:
            logger.warning("[step-enrollment] 非法正则 %r: %s", keyword, exc)
            return False
    return text.strip() == keyword.strip()


def check_keyword_trigger(tenant_id, patient_id: str, text: str, line_uid: str | None = None, now=None) -> int:
    enrolled = 0
    for scenario in _enabled(tenant_id, "keyword"):
        if not keyword_matches(scenario.trigger_keyword, scenario.keyword_match, text or ""):
            continue
        if enroll_patient(tenant_id, scenario.id, patient_id, line_uid, now=now):
            enrolled += 1
    return enrolled


def exit_all_enrollments(tenant_id, patient_id: str, reason: str = "manual", now=None) -> int:
    return _enrollments.update(
        tenant_id,
        {"patient_id": patient_id, "status": "active"},
        status="exited",
        exited_at=now or timezone.now(),
        exit_reason=reason,
        next_send_at=None,
    )


# ── 状态推进 ───────────────────────────────────────────────────────────────

def mark_completed(enrollment: StepEnrollment, now=None) -> None:
    enrollment.status = "completed"
    enrollment.completed_at = now or timezone.now()
    enrollment.next_send_at = None
    enrollment.save(update_fields=["status", "completed_at", "next_send_at"])
    _scenarios.update(
        enrollment.tenant_id, {"id": enrollment.scenario_id},
        total_completed=F("total_completed") + 1,
    )


def _move_to(enrollment: StepEnrollment, step: StepItem, now) -> None:
    enrollment.current_step_order = step.sort_order
    enrollment.next_send_at = _next_send_at(step, now)
    enrollment.save(update_fields=["current_step_order", "next_send_at"])


def jump_to_step(enrollment: StepEnrollment, sort_order, now=None) -> None:
    """跳到指定 sort_order；目标不存在（None / 越界）→ 完成。"""
    now = now or timezone.now()
    step = None
    if sort_order is not None:
        step = _items.first(enrollment.tenant_id, scenario_id=enrollment.scenario_id, sort_order=sort_order)
    if step is None:
        mark_completed(enrollment, now)
        return
    _move_to(enrollment, step, now)


def advance_to_next_step(enrollment: StepEnrollment, now=None) -> None:
    now = now or timezone.now()
    step = (
        _items.filter(
            enrollment.tenant_id,
            scenario_id=enrollment.scenario_id,
            sort_order__gt=enrollment.current_step_order,
        )
        .order_by("sort_order", "id")
        .first()
    )
    if step is None:
        mark_completed(enrollment, now)
        return
    _move_to(enrollment, step, now)
