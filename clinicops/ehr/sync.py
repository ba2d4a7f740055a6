"""
EHR 同步：本系统 ⇄ 外部电子病历。

  push_patient  患者 → 外部（最新问诊补全字段），记录 EhrPatientMapping
  pull_patient  外部 → 患者（有 mapping 则更新，没有则新建 EHR_{provider}_{外部ID}）
  push_karte    问诊 note → 外部病历（需要先同步过患者）
  pull_karte    外部病历 → 问诊 note（同一 note 已存在则跳过）
  sync_batch    批量 push / pull 患者

每个函数都返回 SyncResult 并写一条 EhrSyncLog；单个患者失败只体现在
status="error"，不抛异常，批量同步照常继续。
"""

import logging
from datetime import datetime, time

from django.db import DatabaseError
from django.utils import timezone

from ..exceptions import BaseAppException
from ..models import EhrPatientMapping, EhrSyncLog, Intake, Patient
from ..repository import TenantRepository
from ..scheduling.timeutil import JST
from .base import BaseEhrAdapter
from .mapper import from_ehr_karte, from_ehr_patient, to_ehr_karte, to_ehr_patient
from .types import SyncResult

logger = logging.getLogger(__name__)

_patients = TenantRepository(Patient)
_intakes = TenantRepository(Intake)
_mappings = TenantRepository(EhrPatientMapping)
_sync_logs = TenantRepository(EhrSyncLog)

MAX_BATCH_SIZE = 200
DEFAULT_LOG_LIMIT = 50

# 单条同步里可以吞掉的失败：外部系统写入失败、数据库错误
_ITEM_ERRORS = (BaseAppException, DatabaseError)


# ── 日志 / mapping ─────────────────────────────────────────────────────────

def _record(tenant_id, result: SyncResult) -> SyncResult:
    try:
        _sync_logs.create(
            tenant_id,
            provider=result.provider,
            direction=result.direction,
            resource_type=result.resource_type,
            patient_id=result.patient_id or None,
            external_id=result.external_id or None,
            status=result.status,
            detail=result.detail or None,
        )
    except DatabaseError as exc:
        logger.error("[ehr-sync] 同步日志写入失败: %s", exc)

    log = logger.warning if result.status == "error" else logger.info
    log(
        "[ehr-sync] %s %s %s patient=%s external=%s status=%s %s",
        result.provider, result.direction, result.resource_type,
        result.patient_id, result.external_id, result.status, result.detail,
    )
    return result


def get_external_id(tenant_id, patient_id: str, provider: str) -> str:
    mapping = _mappings.filter(tenant_id, patient_id=patient_id, provider=provider).order_by("-last_synced_at").first()
    return mapping.external_id if mapping else ""


def get_patient_id(tenant_id, external_id: str, provider: str) -> str:
    mapping = _mappings.first(tenant_id, external_id=external_id, provider=provider)
    return mapping.patient_id if mapping else ""


def upsert_mapping(tenant_id, patient_id: str, external_id: str, provider: str) -> None:
    _mappings.update_or_create(
        tenant_id,
        {"provider": provider, "external_id": external_id},
        patient_id=patient_id,
    )


def _latest_intake(tenant_id, patient_id: str):
    return _intakes.filter(tenant_id, patient_id=patient_id).order_by("-created_at", "-id").first()


# ── 患者 ───────────────────────────────────────────────────────────────────

def push_patient(tenant_id, patient_id: str, adapter: BaseEhrAdapter) -> SyncResult:
    result = SyncResult(adapter.provider, "push", "patient", "skipped", patient_id=patient_id)
    try:
        patient = _patients.first(tenant_id, patient_id=patient_id)
        if patient is None:
            result.detail = "患者が見つかりません"
            return _record(tenant_id, result)

        ehr_patient = to_ehr_patient(patient, _latest_intake(tenant_id, patient_id))
        # 已同步过的患者用外部 ID 更新，否则由外部系统分配
        ehr_patient.external_id = get_external_id(tenant_id, patient_id, adapter.provider)

        external_id = adapter.push_patient(ehr_patient)
        upsert_mapping(tenant_id, patient_id, external_id, adapter.provider)

        result.status = "success"
        result.external_id = external_id
        result.detail = f"外部カルテに送信完了 (外部ID: {external_id})"
    except _ITEM_ERRORS as exc:
        result.status = "error"
        result.detail = str(exc)
    return _record(tenant_id, result)


def pull_patient(tenant_id, external_id: str, adapter: BaseEhrAdapter) -> SyncResult:
    result = SyncResult(adapter.provider, "pull", "patient", "skipped", external_id=external_id)
    try:
        ehr_patient = adapter.get_patient(external_id)
        if ehr_patient is None:
            result.detail = "外部カルテに患者が見つかりません"
            return _record(tenant_id, result)

        updates = from_ehr_patient(ehr_patient)
        patient_id = get_patient_id(tenant_id, external_id, adapter.provider)

        if patient_id:
            _patients.update(tenant_id, {"patient_id": patient_id}, updated_at=timezone.now(), **updates)
            result.detail = "既存患者データを更新しました"
        else:
            patient_id = f"EHR_{adapter.provider}_{external_id}"
            _patients.update_or_create(tenant_id, {"patient_id": patient_id}, **updates)
            upsert_mapping(tenant_id, patient_id, external_id, adapter.provider)
            result.detail = "新規患者として登録しました"

        result.status = "success"
        result.patient_id = patient_id
    except _ITEM_ERRORS as exc:
        result.status = "error"
        result.detail = str(exc)
    return _record(tenant_id, result)


# ── 病历 ───────────────────────────────────────────────────────────────────

def push_karte(tenant_id, patient_id: str, adapter: BaseEhrAdapter) -> SyncResult:
    result = SyncResult(adapter.provider, "push", "karte", "skipped", patient_id=patient_id)
    try:
        patient = _patients.first(tenant_id, patient_id=patient_id)
        if patient is None:
            result.detail = "患者が見つかりません"
            return _record(tenant_id, result)

        external_id = get_external_id(tenant_id, patient_id, adapter.provider)
        if not external_id:
            result.detail = "患者の外部IDマッピングがありません。先に患者を同期してください"
            return _record(tenant_id, result)

        intakes = (
            _intakes.filter(tenant_id, patient_id=patient_id, note__isnull=False)
            .exclude(note="")
            .order_by("-created_at", "-id")
        )
        pushed = 0
        for intake in intakes:
            karte = to_ehr_karte(intake, patient)
            karte.patient_external_id = external_id
            adapter.push_karte(karte)
            pushed += 1

        result.status = "success"
        result.external_id = external_id
        result.detail = f"カルテ{pushed}件を送信しました"
    except _ITEM_ERRORS as exc:
        result.status = "error"
        result.detail = str(exc)
    return _record(tenant_id, result)


def _karte_created_at(date_str: str):
    try:
        day = datetime.strptime(date_str, "%Y-%m-%d").date()
    except ValueError:
        return None
    return datetime.combine(day, time(0, 0), tzinfo=JST)


def pull_karte(tenant_id, patient_id: str, adapter: BaseEhrAdapter) -> SyncResult:
    result = SyncResult(adapter.provider, "pull", "karte", "skipped", patient_id=patient_id)
    try:
        external_id = get_external_id(tenant_id, patient_id, adapter.provider)
        if not external_id:
            result.detail = "患者の外部IDマッピングがありません"
            return _record(tenant_id, result)
        result.external_id = external_id

        kartes = adapter.get_karte_list(external_id)
        if not kartes:
            result.detail = "外部カルテにデータがありません"
            return _record(tenant_id, result)

        imported = 0
        for karte in kartes:
            note = from_ehr_karte(karte)["note"]
            if not note or _intakes.exists(tenant_id, patient_id=patient_id, note=note):
                continue
            intake = _intakes.create(tenant_id, patient_id=patient_id, note=note)
            created_at = _karte_created_at(karte.date)
            if created_at is not None:
                # created_at 是 auto_now_add，只能创建后再改成诊察日
                _intakes.update(tenant_id, {"id": intake.id}, created_at=created_at)
            imported += 1

        result.status = "success"
        result.detail = f"カルテ{imported}件をインポートしました（{len(kartes) - imported}件スキップ）"
    except _ITEM_ERRORS as exc:
        result.status = "error"
        result.detail = str(exc)
    return _record(tenant_id, result)


# ── 批量 ───────────────────────────────────────────────────────────────────

def sync_patient(tenant_id, patient_id: str, direction: str, resource_type: str, adapter: BaseEhrAdapter) -> SyncResult:
    if resource_type == "karte":
        sync = push_karte if direction == "push" else pull_karte
        return sync(tenant_id, patient_id, adapter)

    if direction == "push":
        return push_patient(tenant_id, patient_id, adapter)

    # pull 需要外部 ID，从 mapping 反查
    external_id = get_external_id(tenant_id, patient_id, adapter.provider)
    if not external_id:
        return _record(tenant_id, SyncResult(
            adapter.provider, "pull", "patient", "skipped",
            patient_id=patient_id, detail="外部IDマッピングなし",
        ))
    return pull_patient(tenant_id, external_id, adapter)


def sync_batch(tenant_id, patient_ids: list[str], direction: str, adapter: BaseEhrAdapter,
               resource_type: str = "patient") -> list[SyncResult]:
    return [
        sync_patient(tenant_id, patient_id, direction, resource_type, adapter)
        for patient_id in patient_ids
    ]


def get_sync_logs(tenant_id, limit: int = DEFAULT_LOG_LIMIT):
    return _sync_logs.filter(tenant_id).order_by("-created_at", "-id")[:limit]
