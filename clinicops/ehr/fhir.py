"""
FhirAdapter — HL7 FHIR R4, JSON over HTTPS。

  GET  /metadata                                  连接测试
  GET  /Patient/{id}                              患者 1 件（404 → None）
  GET  /Patient?name=&telecom=&birthdate=         检索（Bundle）
  POST /Patient  /  PUT /Patient/{id}             新建 / 更新
  GET  /DocumentReference?subject=Patient/{id}    病历列表
  POST /DocumentReference                         病历登录（正文 base64）

认证：auth_type="bearer" → Authorization: Bearer token
      auth_type="basic"  → Authorization: Basic base64(username:password)
"""

import base64
import logging

import requests
from django.conf import settings

from ..exceptions import EhrTransportError
from ..scheduling.timeutil import get_jst_today
from .base import BaseEhrAdapter
from .types import ConnectionResult, EhrKarte, EhrPatient, FhirConfig

logger = logging.getLogger(__name__)

FHIR_CONTENT_TYPE = "application/fhir+json"
DESCRIPTION_MAX_LENGTH = 200

_SEX_FROM_GENDER = {"male": "男", "female": "女"}
_GENDER_FROM_SEX = {"男": "male", "male": "male", "女": "female", "female": "female"}


# ── 资源 ⇄ 模型 ────────────────────────────────────────────────────────────

def fhir_to_patient(resource: dict) -> EhrPatient:
    names = resource.get("name") or [{}]
    name = names[0]
    full_name = name.get("text") or " ".join(
        part for part in [name.get("family"), *(name.get("given") or [])] if part
    )

    phone = next((t for t in resource.get("telecom") or [] if t.get("system") == "phone"), {})
    address = (resource.get("address") or [{}])[0]

    return EhrPatient(
        external_id=resource.get("id") or "",
        name=full_name or "",
        sex=_SEX_FROM_GENDER.get(resource.get("gender"), ""),
        birthday=resource.get("birthDate") or "",
        tel=phone.get("value") or "",
        postal_code=address.get("postalCode") or "",
        address=address.get("text") or "",
    )


def patient_to_fhir(patient: EhrPatient) -> dict:
    resource = {
        "resourceType": "Patient",
        "name": [{"text": patient.name, "use": "official"}],
        "gender": _GENDER_FROM_SEX.get(patient.sex, "unknown"),
    }
    if patient.birthday:
        resource["birthDate"] = patient.birthday
    if patient.external_id:
        resource["id"] = patient.external_id
    if patient.tel:
        resource["telecom"] = [{"system": "phone", "value": patient.tel, "use": "mobile"}]
    if patient.address or patient.postal_code:
        resource["address"] = [{"use": "home", "text": patient.address, "postalCode": patient.postal_code}]
    return resource


def fhir_to_karte(resource: dict, patient_external_id: str) -> EhrKarte:
    content = ""
    attachments = resource.get("content") or [{}]
    data = (attachments[0].get("attachment") or {}).get("data")
    if data:
        try:
            content = base64.b64decode(data).decode("utf-8")
        except ValueError:
            logger.warning("[ehr-fhir] DocumentReference id=%s 附件无法解码", resource.get("id"))

    return EhrKarte(
        external_id=resource.get("id") or "",
        patient_external_id=patient_external_id,
        date=(resource.get("date") or "")[:10] or get_jst_today(),
        content=content or resource.get("description") or "",
    )


def karte_to_fhir(karte: EhrKarte) -> dict:
    return {
        "resourceType": "DocumentReference",
        "subject": {"reference": f"Patient/{karte.patient_external_id}"},
        "date": karte.date,
        "description": karte.content[:DESCRIPTION_MAX_LENGTH],
        "content": [{
            "attachment": {
                "contentType": "text/plain",
                "data": base64.b64encode(karte.content.encode("utf-8")).decode("ascii"),
            },
        }],
    }


def _bundle_resources(bundle: dict, resource_type: str) -> list[dict]:
    return [
        entry["resource"]
        for entry in bundle.get("entry") or []
        if (entry.get("resource") or {}).get("resourceType") == resource_type
    ]


# ── FhirAdapter ────────────────────────────────────────────────────────────

class FhirAdapter(BaseEhrAdapter):
    provider = "fhir"

    def __init__(self, config: FhirConfig):
        self.config = config

    def _headers(self) -> dict:
        headers = {"Content-Type": FHIR_CONTENT_TYPE, "Accept": FHIR_CONTENT_TYPE}
        if self.config.auth_type == "bearer" and self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        elif self.config.auth_type == "basic" and self.config.username and self.config.password:
            credential = f"{self.config.username}:{self.config.password}".encode("utf-8")
            headers["Authorization"] = "Basic " + base64.b64encode(credential).decode("ascii")
        return headers

    def _request(self, path: str, method: str = "GET", params: dict | None = None, body: dict | None = None):
        """
        Raises:
            EhrTransportError: 网络错误、非 2xx、响应不是 JSON 对象。404 时 detail.status == 404
        """
        try:
            response = requests.request(
                method,
                self.config.base_url.rstrip("/") + path,
                params=params,
                json=body,
                headers=self._headers(),
                timeout=settings.OUTBOUND_HTTP_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise EhrTransportError(f"FHIR API エラー: {exc}") from exc

        if not response.ok:
            raise EhrTransportError(
                f"FHIR API エラー: {response.status_code} {response.reason}",
                detail={"status": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise EhrTransportError(f"FHIR API エラー: 不正なJSON応答 ({exc})") from exc
        # FHIR 的资源和 Bundle 都是 JSON 对象
        if not isinstance(payload, dict):
            raise EhrTransportError(f"FHIR API エラー: 不正なJSON応答 ({type(payload).__name__})")
        return payload

    # ── BaseEhrAdapter ─────────────────────────────────────────────────────

    def test_connection(self) -> ConnectionResult:
        try:
            self._request("/metadata")
        except EhrTransportError as exc:
            return ConnectionResult(ok=False, message=f"接続失敗: {exc.message}")
        return ConnectionResult(ok=True, message="FHIRサーバーに正常に接続しました")

    def get_patient(self, external_id: str) -> EhrPatient | None:
        try:
            resource = self._request(f"/Patient/{external_id}")
        except EhrTransportError as exc:
            logger.warning("[ehr-fhir] get_patient id=%s 失败: %s", external_id, exc)
            return None
        return fhir_to_patient(resource)

    def search_patients(self, name: str = "", tel: str = "", birthday: str = "") -> list[EhrPatient]:
        params = {}
        if name:
            params["name"] = name
        if tel:
            params["telecom"] = tel
        if birthday:
            params["birthdate"] = birthday

        try:
            bundle = self._request("/Patient", params=params)
        except EhrTransportError as exc:
            logger.warning("[ehr-fhir] search_patients 失败: %s", exc)
            return []
        return [fhir_to_patient(r) for r in _bundle_resources(bundle, "Patient")]

    def push_patient(self, patient: EhrPatient) -> str:
        resource = patient_to_fhir(patient)
        if patient.external_id:
            updated = self._request(f"/Patient/{patient.external_id}", "PUT", body=resource)
            return updated.get("id") or patient.external_id
        created = self._request("/Patient", "POST", body=resource)
        return created.get("id") or ""

    def get_karte_list(self, patient_external_id: str) -> list[EhrKarte]:
        try:
            bundle = self._request("/DocumentReference", params={"subject": f"Patient/{patient_external_id}"})
        except EhrTransportError as exc:
            logger.warning("[ehr-fhir] get_karte_list id=%s 失败: %s", patient_external_id, exc)
            return []
        return [fhir_to_karte(r, patient_external_id) for r in _bundle_resources(bundle, "DocumentReference")]

    def push_karte(self, karte: EhrKarte) -> None:
        self._request("/DocumentReference", "POST", body=karte_to_fhir(karte))
