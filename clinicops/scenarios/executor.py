"""
StepExecutor — 推进到期的 enrollment，每次 tick 每个 enrollment 最多走一步。

由 Celery beat 每 5 分钟调用（tasks.process_step_enrollments）。

对每个 next_send_at <= now 的 active enrollment：
  场景已停用           → paused
  当前步骤不存在       → completed
  满足退出条件         → exited，或 jump 到 exit_jump_to
  condition 步骤       → 判定后走 true / false 分支
                         true 没指定 → 下一步；false 没指定或目标不存在 → completed
                         没有规则 → 直接下一步
  send_* 步骤          → 推送（没有 line_uid 时跳过发送，照常前进）
  tag / mark 步骤      → 修改患者状态
  然后前进到下一个 sort_order

单个 enrollment 出错只计入 errors，不影响其他 enrollment。
"""

import logging

from django.utils import timezone

from ..messaging import get_messenger
from ..models import MessageLog, MessageTemplate, Patient, PatientMark, PatientTag, StepEnrollment, StepItem
from ..repository import TenantRepository
from .conditions import evaluate_conditions, load_patient_state
from .enrollment import advance_to_next_step, jump_to_step, mark_completed
from .types import SEND_STEP_TYPES

logger = logging.getLogger(__name__)

_items = TenantRepository(StepItem)
_patients = TenantRepository(Patient)
_tags = TenantRepository(PatientTag)
_marks = TenantRepository(PatientMark)
_templates = TenantRepository(MessageTemplate)
_message_logs = TenantRepository(MessageLog)

DEFAULT_BATCH_SIZE = 50


def render_step_text(text: str, patient_id: str, patient_name: str) -> str:
    return text.replace("{name}", patient_name or "").replace("{patient_id}", patient_id or "")


class StepExecutor:

    def __init__(self, messenger=None):
        self.messenger = messenger or get_messenger()

    def process_due(self, now=None, limit: int = DEFAULT_BATCH_SIZE) -> dict:
        now = now or timezone.now()
        due = list(
            StepEnrollment.objects
            .filter(status="active", next_send_at__isnull=False, next_send_at__lte=now)
            .select_related("scenario")
            .order_by("next_send_at", "id")[:limit]
        )

        processed = 0
        errors = 0
        for enrollment in due:
            try:
                if self._process_one(enrollment, now):
                    processed += 1
            except Exception as exc:
                logger.error("[process-steps] enrollment=%s 处理失败: %s", enrollment.id, exc)
                errors += 1

        logger.info("[process-steps] processed=%d errors=%d", processed, errors)
        return {"processed": processed, "errors": errors}

    # ── 单个 enrollment ────────────────────────────────────────────────────

    def _process_one(self, enrollment: StepEnrollment, now) -> bool:
        tenant_id = enrollment.tenant_id

        if not enrollment.scenario.is_enabled:
            enrollment.status = "paused"
            enrollment.exited_at = now
            enrollment.exit_reason = "scenario_disabled"
            enrollment.save(update_fields=["status", "exited_at", "exit_reason"])
            return False

        step = _items.first(tenant_id, scenario_id=enrollment.scenario_id, sort_order=enrollment.current_step_order)
        if step is None:
            mark_completed(enrollment, now)
            return False

        if step.exit_condition_rules:
            state = load_patient_state(tenant_id, enrollment.patient_id)
            if evaluate_conditions(step.exit_condition_rules, state):
                self._exit(enrollment, step, now)
                return True

        if step.step_type == "condition":
            if not step.condition_rules:
                # 没有规则的 condition 步骤不分支
                advance_to_next_step(enrollment, now)
                return True
            state = load_patient_state(tenant_id, enrollment.patient_id)
            if evaluate_conditions(step.condition_rules, state):
                if step.branch_true_step is None:
                    advance_to_next_step(enrollment, now)
                else:
                    jump_to_step(enrollment, step.branch_true_step, now)
            else:
                jump_to_step(enrollment, step.branch_false_step, now)
            return True

        if step.step_type in SEND_STEP_TYPES and not enrollment.line_uid:
            logger.warning("[process-steps] patient=%s 没有 line_uid，跳过发送", enrollment.patient_id)
            advance_to_next_step(enrollment, now)
            return True

        self._execute(step, enrollment)
        advance_to_next_step(enrollment, now)
        return True

    def _exit(self, enrollment, step, now) -> None:
        if step.exit_action == "jump":
            jump_to_step(enrollment, step.exit_jump_to, now)
            return
        enrollment.status = "exited"
        enrollment.exited_at = now
        enrollment.exit_reason = "exit_condition"
        enrollment.next_send_at = None
        enrollment.save(update_fields=["status", "exited_at", "exit_reason", "next_send_at"])

    # ── 步骤动作 ───────────────────────────────────────────────────────────

    def _execute(self, step: StepItem, enrollment: StepEnrollment) -> None:
        tenant_id = enrollment.tenant_id
        patient_id = enrollment.patient_id

        if step.step_type in SEND_STEP_TYPES:
            text = self._step_text(step, tenant_id)
            if text:
                patient = _patients.first(tenant_id, patient_id=patient_id)
                self._push(enrollment, render_step_text(text, patient_id, patient.name if patient else ""))

        elif step.step_type == "tag_add" and step.tag_id:
            _tags.update_or_create(
                tenant_id, {"patient_id": patient_id, "tag_id": step.tag_id},
                assigned_by="step_delivery",
            )

        elif step.step_type == "tag_remove" and step.tag_id:
            _tags.delete(tenant_id, patient_id=patient_id, tag_id=step.tag_id)

        elif step.step_type == "mark_change" and step.mark:
            _marks.update_or_create(
                tenant_id, {"patient_id": patient_id},
                mark=step.mark, updated_by="step_delivery",
            )

    def _step_text(self, step: StepItem, tenant_id) -> str:
        if step.step_type == "send_text":
            return step.content or ""
        if step.template_id:
            template = _templates.first(tenant_id, id=step.template_id)
            return template.content if template else ""
        return ""

    def _push(self, enrollment: StepEnrollment, text: str) -> None:
        try:
            ok = self.messenger.send(enrollment.line_uid, [{"type": "text", "text": text}], enrollment.tenant_id).ok
        except Exception as exc:
            logger.warning("[process-steps] enrollment=%s 推送异常: %s", enrollment.id, exc)
            ok = False

        _message_logs.create(
            enrollment.tenant_id,
            patient_id=enrollment.patient_id,
            line_uid=enrollment.line_uid,
            event_type="step_delivery",
            message_type="step",
            content=text,
            status="sent" if ok else "failed",
            campaign_id=str(enrollment.scenario_id),
        )
