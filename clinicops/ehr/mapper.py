"""
EhrMapper — 本系统的 patients / intake 记录 ⇄ EHR 中立模型。

patient / intake 既可以是 model 实例，也可以是 dict（CSV 导入、测试）。
"""

from datetime import datetime

from ..scheduling.timeutil import to_jst
from .phone import normalize_jp_phone
from .types import EhrKarte, EhrPatient

# 问诊回答里的日文字段名，按顺序取第一个非空值
_ANSWER_KEYS = {
    "name_kana": ("氏名カナ", "カナ"),
    "sex": ("性別",),
    "birthday": ("生年月日",),
    "postal_code": ("郵便番号",),
    "address": ("住所",),
    "tel": ("電話番号",),
}

_PATIENT_COLUMNS = ("name", "name_kana", "sex", "birthday", "tel", "postal_code", "address")


def _get(row, key: str):
    if row is None:
        return None
    if isinstance(row, dict):
        return row.get(key)
    return getattr(row, key, None)


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _answer(answers: dict, field_name: str) -> str:
    for key in _ANSWER_KEYS[field_name]:
        value = _text(answers.get(key))
        if value:
            return value
    return ""


def to_ehr_patient(patient, intake=None) -> EhrPatient:
    answers = _get(intake, "answers") or {}
    if not isinstance(answers, dict):
        answers = {}

    def pick(field_name: str) -> str:
        return _text(_get(patient, field_name)) or _answer(answers, field_name)

    return EhrPatient(
        external_id=_text(_get(patient, "patient_id")),
        name=_text(_get(patient, "name")),
        name_kana=pick("name_kana"),
        sex=pick("sex"),
        birthday=pick("birthday"),
        tel=pick("tel"),
        postal_code=pick("postal_code"),
        address=pick("address"),
    )


def from_ehr_patient(ehr: EhrPatient) -> dict:
    """
    EhrPatient → patients 表的部分更新 dict。空字段不出现在结果里。
    """
    updates = {}
    for column in _PATIENT_COLUMNS:
        value = _text(getattr(ehr, column, ""))
        if column == "tel":
            value = normalize_jp_phone(value)
        if value:
            updates[column] = value
    return updates


def _karte_date(value) -> str:
    if isinstance(value, datetime):
        return to_jst(value).date().isoformat()
    return _text(value)[:10]


def to_ehr_karte(intake, patient) -> EhrKarte:
    return EhrKarte(
        external_id=_text(_get(intake, "id")),
        patient_external_id=_text(_get(patient, "patient_id")) or _text(_get(intake, "patient_id")),
        date=_karte_date(_get(intake, "created_at")),
        content=_text(_get(intake, "note")),
    )


def from_ehr_karte(karte: EhrKarte) -> dict:
    """
    EhrKarte → {"note": ...}

    note = 正文 + "\\n【傷病名】…" + "\\n【処方】…"（没有的段落省略，顺序固定）
    """
    parts = []
    if karte.content:
        parts.append(karte.content)
    if karte.diagnosis:
        parts.append(f"【傷病名】{karte.diagnosis}")
    if karte.prescription:
        parts.append(f"【処方】{karte.prescription}")
    return {"note": "\n".join(parts)}
