import logging

from celery import shared_task
from django.db import DatabaseError

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=2,
    default_retry_delay=30,   # 初始重试延迟（秒），指数退避会乘以 2^retry_count
    acks_late=True,           # 任务执行完才 ack，防止 worker 崩溃时任务丢失
    reject_on_worker_lost=True,
)
def dispatch_reminders(self):
    """
    自动提醒。Celery beat 每 5 分钟触发一次。

    单条发送失败只计入结果；读规则失败（数据库不可用）才重试：
      - 最多重试 2 次，30s → 60s
      - 重试和下一次 tick 重叠也没关系，ReminderSentLog 唯一约束保证不重复发送
    """
    from clinicops.scheduling.dispatcher import ReminderDispatcher

    logger.info("[Celery][dispatch_reminders] 开始 (attempt %d/%d)",
                self.request.retries + 1, self.max_retries + 1)
    try:
        result = ReminderDispatcher().dispatch()
    except DatabaseError as exc:
        if self.request.retries < self.max_retries:
            countdown = self.default_retry_delay * (2 ** self.request.retries)
            logger.warning("[Celery][dispatch_reminders] 读取规则失败，%ds 后重试: %s", countdown, exc)
            raise self.retry(exc=exc, countdown=countdown)
        logger.error("[Celery][dispatch_reminders] 已达最大重试次数: %s", exc)
        raise

    logger.info("[Celery][dispatch_reminders] 完成 %s", result.to_dict())
    return result.to_dict()


@shared_task(acks_late=True, reject_on_worker_lost=True)
def process_step_enrollments(limit: int = 50):
    """步骤配信。每次 tick 每个 enrollment 最多前进一步。"""
    from clinicops.scenarios.executor import StepExecutor

    result = StepExecutor().process_due(limit=limit)
    logger.info("[Celery][process_step_enrollments] 完成 %s", result)
    return result


@shared_task(acks_late=True)
def sync_ehr_patients(tenant_id, patient_ids: list[str], direction: str, resource_type: str = "patient"):
    """
    EHR 批量同步（患者数多时由 view 投递到这里）。

    返回每个患者的 SyncResult dict；未配置 provider 时返回 None。
    """
    from clinicops.ehr.factory import get_ehr_adapter
    from clinicops.ehr.sync import sync_batch

    adapter = get_ehr_adapter(tenant_id)
    if adapter is None:
        logger.warning("[Celery][sync_ehr_patients] tenant=%s 未配置 EHR provider", tenant_id)
        return None

    results = sync_batch(tenant_id, patient_ids, direction, adapter, resource_type=resource_type)
    logger.info(
        "[Celery][sync_ehr_patients] tenant=%s %s/%s %d 件完成",
        tenant_id, direction, resource_type, len(results),
    )
    return [r.to_dict() for r in results]
