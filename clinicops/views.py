"""
HTTP 入口。View 只做：取租户 / 参数 → 调用业务函数 → 返回 {ok: true, ...}。

错误一律 raise BaseAppException 子类，由 exception_handler 统一格式化。
租户从请求头 X-Tenant-ID 取，没有时为 None（单租户）。
"""

import logging
import re

from django.conf import settings
from django.http import HttpResponse
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from .csvutil import BOM, decode_upload
from .ehr.csv_adapter import CsvAdapter, generate_karte_csv, generate_patient_csv
from .ehr.factory import get_ehr_adapter
from .ehr.mapper import to_ehr_karte, to_ehr_patient
from .ehr.sync import MAX_BATCH_SIZE, get_sync_logs, pull_patient, sync_batch
from .ehr.types import PROVIDERS
from .exceptions import BlockError, NotFoundError, UnauthorizedError, ValidationError
from .messaging import get_messenger
from .models import Intake, Patient, ReminderRule, StepEnrollment, StepScenario
from .reconciliation.matcher import reconcile
from .repository import TenantRepository
from .scenarios.compiler import load_scenario_graph, save_scenario_graph
from .scenarios.enrollment import enroll_patient
from .scenarios.executor import StepExecutor
from .scenarios.types import FlowGraph
from .scheduling.dispatcher import ReminderDispatcher
from .scheduling.manual import preview_manual_reminders, send_manual_reminders
from .scheduling.rules import validate_reminder_rule
from .serializers import (
    serialize_enrollment,
    serialize_reminder_rule,
    serialize_sync_log,
    serialize_sync_results,
)

logger = logging.getLogger(__name__)

_rules = TenantRepository(ReminderRule)
_patients = TenantRepository(Patient)
_intakes = TenantRepository(Intake)
_scenarios = TenantRepository(StepScenario)
_enrollments = TenantRepository(StepEnrollment)

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
SYNC_DIRECTIONS = ("push", "pull")
SYNC_RESOURCE_TYPES = ("patient", "karte")
MAX_LOG_LIMIT = 500


# ── 共用 ───────────────────────────────────────────────────────────────────

def tenant_of(request):
    return request.headers.get("X-Tenant-ID") or None


def ok(payload=None, status_code=status.HTTP_200_OK):
    return Response({"ok": True, **(payload or {})}, status=status_code)


def require_date(value) -> str:
    if not value or not DATE_RE.match(value):
        raise ValidationError("日付は YYYY-MM-DD 形式で指定してください", code="INVALID_DATE", detail={"date": value})
    return value


def uploaded_csv(request) -> str:
    upload = request.FILES.get("file")
    if upload is None:
        raise ValidationError("CSVファイルを指定してください", code="FILE_REQUIRED")
    try:
        return decode_upload(upload.read())
    except UnicodeDecodeError as exc:
        raise ValidationError("CSVファイルは UTF-8 で保存してください", code="INVALID_ENCODING") from exc


def require_adapter(tenant_id, provider=None):
    adapter = get_ehr_adapter(tenant_id, provider)
    if adapter is None:
        raise ValidationError("電子カルテ連携が設定されていません", code="EHR_NOT_CONFIGURED")
    return adapter


def check_cron_secret(request) -> None:
    secret = settings.CRON_SECRET
    if secret and request.headers.get("Authorization") != f"Bearer {secret}":
        raise UnauthorizedError("Unauthorized")


# ── フロービルダー ─────────────────────────────────────────────────────────

class ScenarioFlowView(APIView):
    """GET / PUT /api/scenarios/<id>/flow/"""

    def get(self, request, scenario_id):
        graph = load_scenario_graph(tenant_of(request), scenario_id)
        return ok(graph.to_dict())

    def put(self, request, scenario_id):
        graph = FlowGraph.from_dict(request.data)
        steps = save_scenario_graph(tenant_of(request), scenario_id, graph)
        return ok({"steps": [s.to_dict() for s in steps]})


class ScenarioEnrollView(APIView):
    """POST /api/scenarios/<id>/enroll/  手动报名"""

    def post(self, request, scenario_id):
        tenant_id = tenant_of(request)
        patient_id = (request.data.get("patient_id") or "").strip()
        if not patient_id:
            raise ValidationError("patient_id は必須です", code="PATIENT_ID_REQUIRED")
        if not _scenarios.exists(tenant_id, id=scenario_id):
            raise NotFoundError("シナリオが見つかりません", code="SCENARIO_NOT_FOUND", detail={"scenario_id": scenario_id})
        if _enrollments.exists(tenant_id, scenario_id=scenario_id, patient_id=patient_id):
            raise BlockError("この患者は既にシナリオに登録されています", code="ALREADY_ENROLLED")

        enrollment = enroll_patient(tenant_id, scenario_id, patient_id, line_uid=request.data.get("line_uid"))
        if enrollment is None:
            # 场景里还没有步骤
            return ok({"enrolled": False})
        return ok({"enrolled": True, "enrollment": serialize_enrollment(enrollment)}, status.HTTP_201_CREATED)


# ── 銀行振込照合 ───────────────────────────────────────────────────────────

class ReconcileView(APIView):
    """POST /api/bank-transfer/reconcile/  （multipart: file）"""

    preview = False

    def post(self, request):
        result = reconcile(tenant_of(request), uploaded_csv(request), preview=self.preview)
        return ok(result)


class ReconcilePreviewView(ReconcileView):
    """POST /api/bank-transfer/reconcile/preview/  只匹配，不写库"""

    preview = True


# ── リマインダー ───────────────────────────────────────────────────────────

class ReminderRuleListView(APIView):
    """GET / POST /api/reminder-rules/"""

    def get(self, request):
        rules = _rules.filter(tenant_of(request)).order_by("id")
        return ok({"rules": [serialize_reminder_rule(r) for r in rules]})

    def post(self, request):
        fields = validate_reminder_rule(request.data)
        rule = _rules.create(tenant_of(request), **fields)
        logger.info("[reminder-rules] tenant=%s 新建 rule=%s", rule.tenant_id, rule.id)
        return ok({"rule": serialize_reminder_rule(rule)}, status.HTTP_201_CREATED)


class ReminderRuleDetailView(APIView):
    """PUT / DELETE /api/reminder-rules/<id>/"""

    def _get(self, request, rule_id):
        rule = _rules.first(tenant_of(request), id=rule_id)
        if rule is None:
            raise NotFoundError("ルールが見つかりません", code="RULE_NOT_FOUND", detail={"rule_id": rule_id})
        return rule

    def put(self, request, rule_id):
        rule = self._get(request, rule_id)
        for name, value in validate_reminder_rule(request.data).items():
            setattr(rule, name, value)
        rule.save()
        return ok({"rule": serialize_reminder_rule(rule)})

    def delete(self, request, rule_id):
        self._get(request, rule_id).delete()
        return ok()


class SendReminderView(APIView):
    """
    GET  /api/reservations/send-reminder/?date=YYYY-MM-DD  预览
    POST /api/reservations/send-reminder/ {date}           发送
    """

    def get(self, request):
        date_str = require_date(request.query_params.get("date"))
        return ok(preview_manual_reminders(tenant_of(request), date_str))

    def post(self, request):
        date_str = require_date(request.data.get("date"))
        return ok(send_manual_reminders(tenant_of(request), date_str, get_messenger()))


# ── cron ───────────────────────────────────────────────────────────────────

class CronRemindersView(APIView):
    """GET /api/cron/reminders/  （Authorization: Bearer CRON_SECRET）"""

    def get(self, request):
        check_cron_secret(request)
        return ok(ReminderDispatcher().dispatch().to_dict())


class CronProcessStepsView(APIView):
    """GET /api/cron/process-steps/"""

    def get(self, request):
        check_cron_secret(request)
        return ok(StepExecutor().process_due())


# ── 電子カルテ連携 ─────────────────────────────────────────────────────────

class EhrTestConnectionView(APIView):
    """POST /api/ehr/test-connection/ {provider?}"""

    def post(self, request):
        provider = request.data.get("provider")
        if provider and provider not in PROVIDERS:
            raise ValidationError(f"不明なプロバイダーです: {provider}", code="UNKNOWN_PROVIDER")
        result = require_adapter(tenant_of(request), provider).test_connection()
        return ok({"connected": result.ok, "message": result.message})


class EhrSyncView(APIView):
    """
    POST /api/ehr/sync/
    {patient_ids: [...], direction: push|pull, resource_type: patient|karte, background?: bool}
    """

    def post(self, request):
        tenant_id = tenant_of(request)
        patient_ids = request.data.get("patient_ids") or []
        direction = request.data.get("direction")
        resource_type = request.data.get("resource_type") or "patient"

        errors = []
        if not isinstance(patient_ids, list) or not 1 <= len(patient_ids) <= MAX_BATCH_SIZE:
            errors.append({"field": "patient_ids", "message": f"patient_ids は 1〜{MAX_BATCH_SIZE} 件で指定してください"})
        if direction not in SYNC_DIRECTIONS:
            errors.append({"field": "direction", "message": "direction は push / pull のいずれかです"})
        if resource_type not in SYNC_RESOURCE_TYPES:
            errors.append({"field": "resource_type", "message": "resource_type は patient / karte のいずれかです"})
        if errors:
            raise ValidationError(errors[0]["message"], code="INVALID_SYNC_REQUEST", detail={"errors": errors})

        adapter = require_adapter(tenant_id)

        if request.data.get("background"):
            from .tasks import sync_ehr_patients

            task = sync_ehr_patients.delay(tenant_id, patient_ids, direction, resource_type)
            return ok({"queued": True, "task_id": task.id}, status.HTTP_202_ACCEPTED)

        results = sync_batch(tenant_id, patient_ids, direction, adapter, resource_type=resource_type)
        return ok(serialize_sync_results(results))


class EhrImportView(APIView):
    """POST /api/ehr/import/  （multipart: file）患者 CSV → patients"""

    def post(self, request):
        tenant_id = tenant_of(request)
        adapter = CsvAdapter()
        adapter.load_patients(uploaded_csv(request))

        external_ids = [p.external_id for p in adapter.search_patients() if p.external_id]
        results = [pull_patient(tenant_id, external_id, adapter) for external_id in external_ids]
        return ok(serialize_sync_results(results))


class EhrExportView(APIView):
    """GET /api/ehr/export/?kind=patients|kartes&patient_ids=P001,P002"""

    def get(self, request):
        tenant_id = tenant_of(request)
        kind = request.query_params.get("kind") or "patients"
        if kind not in ("patients", "kartes"):
            raise ValidationError("kind は patients / kartes のいずれかです", code="INVALID_EXPORT_KIND")

        raw_ids = request.query_params.get("patient_ids") or ""
        patients = _patients.filter(tenant_id).order_by("patient_id")
        if raw_ids:
            patients = patients.filter(patient_id__in=[p.strip() for p in raw_ids.split(",") if p.strip()])

        if kind == "patients":
            body = generate_patient_csv([
                to_ehr_patient(p, _intakes.filter(tenant_id, patient_id=p.patient_id).order_by("-created_at", "-id").first())
                for p in patients
            ])
        else:
            by_id = {p.patient_id: p for p in patients}
            intakes = (
                _intakes.filter(tenant_id, patient_id__in=list(by_id), note__isnull=False)
                .exclude(note="")
                .order_by("patient_id", "created_at", "id")
            )
            body = generate_karte_csv([to_ehr_karte(i, by_id[i.patient_id]) for i in intakes])

        response = HttpResponse(BOM + body, content_type="text/csv; charset=utf-8")
        response["Content-Disposition"] = f'attachment; filename="ehr_{kind}.csv"'
        return response


class EhrLogsView(APIView):
    """GET /api/ehr/logs/?limit=50"""

    def get(self, request):
        try:
            limit = int(request.query_params.get("limit", 50))
        except ValueError:
            limit = 0
        if not 1 <= limit <= MAX_LOG_LIMIT:
            raise ValidationError(f"limit は 1〜{MAX_LOG_LIMIT} で指定してください", code="INVALID_LIMIT")
        logs = get_sync_logs(tenant_of(request), limit)
        return ok({"logs": [serialize_sync_log(log) for log in logs]})
