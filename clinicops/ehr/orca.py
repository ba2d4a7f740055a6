"""
OrcaAdapter — ORCA（日レセ）API, XML over HTTP + BASIC 认证。

base URL: http://{host}:{port}，is_web=True 时加 /api 前缀

  GET  /api01rv2/patientgetv2?id=…         患者 1 件
  GET  /api01rv2/patientlst1v2?WholeName=… 按姓名检索
  POST /api01rv2/patientmodv2              患者登录 / 更新
  GET  /api01rv2/medicalgetv2?id=…         诊疗信息
  POST /api01rv2/medicalmodv2              诊疗信息登录

性别代码：1=男, 2=女。日期：ORCA 侧 YYYYMMDD，中立模型侧 YYYY-MM-DD。
"""

import logging
import xml.etree.ElementTree as ET

import requests
from django.conf import settings

from ..exceptions import EhrTransportError
from ..scheduling.timeutil import get_jst_today
from .base import BaseEhrAdapter
from .types import ConnectionResult, EhrKarte, EhrPatient, OrcaConfig

logger = logging.getLogger(__name__)

_SEX_FROM_CODE = {"1": "男", "2": "女"}
_SEX_TO_CODE = {"男": "1", "male": "1", "女": "2", "female": "2"}

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'


def format_orca_date(value: str) -> str:
    """"19900115" / "1990-01-15" → "1990-01-15"；长度不对时原样返回。"""
    if not value:
        return ""
    clean = value.replace("-", "")
    if len(clean) != 8:
        return value
    return f"{clean[:4]}-{clean[4:6]}-{clean[6:]}"


def _find_text(element: ET.Element, tag: str) -> str:
    found = element.find(f".//{tag}")
    if found is None or found.text is None:
        return ""
    return found.text.strip()


def _first(element: ET.Element, *tags: str) -> str:
    for tag in tags:
        value = _find_text(element, tag)
        if value:
            return value
    return ""


def _string_field(parent: ET.Element, tag: str, value: str) -> ET.Element:
    el = ET.SubElement(parent, tag, type="string")
    el.text = value or ""
    return el


class OrcaAdapter(BaseEhrAdapter):
    provider = "orca"

    def __init__(self, config: OrcaConfig):
        self.config = config
        prefix = "/api" if config.is_web else ""
        self.base_url = f"http://{config.host}:{config.port}{prefix}"

    # ── HTTP ───────────────────────────────────────────────────────────────

    def _request(self, path: str, method: str = "GET", params: dict | None = None, body: str | None = None) -> str:
        try:
            response = requests.request(
                method,
                self.base_url + path,
                params=params,
                data=body.encode("utf-8") if body is not None else None,
                auth=(self.config.user, self.config.password),
                headers={"Content-Type": "application/xml", "Accept": "application/xml"},
                timeout=settings.OUTBOUND_HTTP_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise EhrTransportError(f"ORCA API エラー: {exc}") from exc

        if not response.ok:
            raise EhrTransportError(
                f"ORCA API エラー: {response.status_code} {response.reason}",
                detail={"status": response.status_code},
            )
        return response.text

    def _get_xml(self, path: str, params: dict) -> ET.Element:
        return ET.fromstring(self._request(path, params=params).encode("utf-8"))

    # ── XML ⇄ 模型 ─────────────────────────────────────────────────────────

    @staticmethod
    def xml_to_patient(element: ET.Element) -> EhrPatient | None:
        external_id = _find_text(element, "Patient_ID")
        name = _find_text(element, "WholeName")
        if not external_id and not name:
            return None

        sex_code = _find_text(element, "Sex")
        address_info = element.find(".//Home_Address_Information")

        return EhrPatient(
            external_id=external_id,
            name=name,
            name_kana=_find_text(element, "WholeName_inKana"),
            sex=_SEX_FROM_CODE.get(sex_code, sex_code),
            birthday=format_orca_date(_find_text(element, "BirthDate")),
            tel=_first(element, "PhoneNumber1", "PhoneNumber2"),
            postal_code=_find_text(address_info, "HomeAddress_ZipCode") if address_info is not None else "",
            address=_first(element, "WholeAddress1", "WholeAddress2"),
        )

    @staticmethod
    def patient_to_xml(patient: EhrPatient) -> str:
        root = ET.Element("data")
        req = ET.SubElement(root, "patientmodreq", type="record")
        _string_field(req, "Patient_ID", patient.external_id)
        _string_field(req, "WholeName", patient.name)
        _string_field(req, "WholeName_inKana", patient.name_kana)
        _string_field(req, "BirthDate", patient.birthday.replace("-", ""))
        _string_field(req, "Sex", _SEX_TO_CODE.get(patient.sex, ""))

        address = ET.SubElement(req, "Home_Address_Information", type="record")
        _string_field(address, "PhoneNumber1", patient.tel)
        _string_field(address, "HomeAddress_ZipCode", patient.postal_code)
        _string_field(address, "WholeAddress1", patient.address)

        return XML_DECLARATION + ET.tostring(root, encoding="unicode")

    @staticmethod
    def karte_to_xml(karte: EhrKarte) -> str:
        root = ET.Element("data")
        req = ET.SubElement(root, "medicalmodreq", type="record")
        _string_field(req, "Patient_ID", karte.patient_external_id)
        _string_field(req, "Perform_Date", karte.date.replace("-", ""))
        _string_field(req, "Medical_Information", karte.content)
        return XML_DECLARATION + ET.tostring(root, encoding="unicode")

    # ── BaseEhrAdapter ─────────────────────────────────────────────────────

    def test_connection(self) -> ConnectionResult:
        try:
            self._request("/api01rv2/patientgetv2", params={"id": "00001"})
        except EhrTransportError as exc:
            return ConnectionResult(ok=False, message=f"接続失敗: {exc.message}")
        return ConnectionResult(ok=True, message="ORCA サーバーに正常に接続しました")

    def get_patient(self, external_id: str) -> EhrPatient | None:
        try:
            root = self._get_xml("/api01rv2/patientgetv2", {"id": external_id})
        except (EhrTransportError, ET.ParseError) as exc:
            logger.warning("[ehr-orca] get_patient id=%s 失败: %s", external_id, exc)
            return None
        return self.xml_to_patient(root)

    def search_patients(self, name: str = "", tel: str = "", birthday: str = "") -> list[EhrPatient]:
        # ORCA 只提供按姓名检索，生日 / 电话在本地过滤
        if not name:
            return []
        try:
            root = self._get_xml("/api01rv2/patientlst1v2", {"WholeName": name})
        except (EhrTransportError, ET.ParseError) as exc:
            logger.warning("[ehr-orca] search_patients name=%s 失败: %s", name, exc)
            return []

        results = []
        # 每个直接带 Patient_ID 子元素的节点是一条患者记录（Patient_Information / *_child）
        for block in root.iter():
            if block.find("Patient_ID") is None:
                continue
            patient = self.xml_to_patient(block)
            if patient is None:
                continue
            if birthday and patient.birthday != birthday:
                continue
            if tel and patient.tel and tel not in patient.tel:
                continue
            results.append(patient)
        return results

    def push_patient(self, patient: EhrPatient) -> str:
        """
        Raises:
            EhrTransportError: ORCA 返回非 2xx 或网络错误
        """
        response_xml = self._request("/api01rv2/patientmodv2", "POST", body=self.patient_to_xml(patient))
        try:
            external_id = _find_text(ET.fromstring(response_xml.encode("utf-8")), "Patient_ID")
        except ET.ParseError:
            external_id = ""
        return external_id or patient.external_id

    def get_karte_list(self, patient_external_id: str) -> list[EhrKarte]:
        try:
            root = self._get_xml("/api01rv2/medicalgetv2", {"id": patient_external_id})
        except (EhrTransportError, ET.ParseError) as exc:
            logger.warning("[ehr-orca] get_karte_list id=%s 失败: %s", patient_external_id, exc)
            return []

        return [
            EhrKarte(
                external_id=_find_text(block, "Medical_ID"),
                patient_external_id=patient_external_id,
                date=format_orca_date(_find_text(block, "Perform_Date")) or get_jst_today(),
                content=_find_text(block, "Medical_Information_child"),
                diagnosis=_find_text(block, "Disease_Name"),
                prescription=_find_text(block, "Medication_Name"),
            )
            for block in root.iter("Medical_Information")
        ]

    def push_karte(self, karte: EhrKarte) -> None:
        self._request("/api01rv2/medicalmodv2", "POST", body=self.karte_to_xml(karte))
