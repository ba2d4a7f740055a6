"""
CSV 导入导出 + CsvAdapter（内存存储，不连外部系统）。

列顺序固定，导出和导入都不能调换：
  患者: 患者ID, 氏名, 氏名カナ, 性別, 生年月日, 電話番号, 郵便番号, 住所
  病历: 患者ID, 診察日, カルテ本文, 傷病名, 処方内容
"""

from ..csvutil import parse_csv, write_csv
from .base import BaseEhrAdapter
from .phone import normalize_jp_phone
from .types import ConnectionResult, EhrKarte, EhrPatient

PATIENT_CSV_HEADERS = ["患者ID", "氏名", "氏名カナ", "性別", "生年月日", "電話番号", "郵便番号", "住所"]
KARTE_CSV_HEADERS = ["患者ID", "診察日", "カルテ本文", "傷病名", "処方内容"]

HEADER_FIRST_CELL = "患者ID"

MIN_PATIENT_COLUMNS = 2
MIN_KARTE_COLUMNS = 3


# ── 行 ⇄ 模型 ──────────────────────────────────────────────────────────────

def ehr_patient_to_csv_row(p: EhrPatient) -> list[str]:
    return [p.external_id, p.name, p.name_kana, p.sex, p.birthday, p.tel, p.postal_code, p.address]


def csv_row_to_ehr_patient(row: list[str]) -> EhrPatient | None:
    if len(row) < MIN_PATIENT_COLUMNS or not (row[0] or row[1]):
        return None
    cells = list(row) + [""] * (len(PATIENT_CSV_HEADERS) - len(row))
    return EhrPatient(
        external_id=cells[0],
        name=cells[1],
        name_kana=cells[2],
        sex=cells[3],
        birthday=cells[4],
        tel=normalize_jp_phone(cells[5]),
        postal_code=cells[6],
        address=cells[7],
    )


def ehr_karte_to_csv_row(k: EhrKarte) -> list[str]:
    return [k.patient_external_id, k.date, k.content, k.diagnosis, k.prescription]


def csv_row_to_ehr_karte(row: list[str]) -> EhrKarte | None:
    if len(row) < MIN_KARTE_COLUMNS:
        return None
    cells = list(row) + [""] * (len(KARTE_CSV_HEADERS) - len(row))
    return EhrKarte(
        patient_external_id=cells[0],
        date=cells[1],
        content=cells[2],
        diagnosis=cells[3],
        prescription=cells[4],
    )


# ── 文件级 ─────────────────────────────────────────────────────────────────

def _data_rows(text: str) -> list[list[str]]:
    rows = parse_csv(text)
    if rows and rows[0] and rows[0][0].strip() == HEADER_FIRST_CELL:
        return rows[1:]
    return rows


def generate_patient_csv(patients: list[EhrPatient]) -> str:
    return write_csv(PATIENT_CSV_HEADERS, [ehr_patient_to_csv_row(p) for p in patients])


def parse_patient_csv(text: str) -> list[EhrPatient]:
    parsed = (csv_row_to_ehr_patient(row) for row in _data_rows(text))
    return [p for p in parsed if p is not None]


def generate_karte_csv(kartes: list[EhrKarte]) -> str:
    return write_csv(KARTE_CSV_HEADERS, [ehr_karte_to_csv_row(k) for k in kartes])


def parse_karte_csv(text: str) -> list[EhrKarte]:
    parsed = (csv_row_to_ehr_karte(row) for row in _data_rows(text))
    return [k for k in parsed if k is not None]


# ── CsvAdapter ─────────────────────────────────────────────────────────────

class CsvAdapter(BaseEhrAdapter):
    """
    没有 API 的电子病历：管理员上传 CSV → load_*，同步结果 → export_*。
    push_patient 按 external_id upsert。
    """

    provider = "csv"

    def __init__(self):
        self._patients: dict[str, EhrPatient] = {}
        self._kartes: list[EhrKarte] = []

    def load_patients(self, text: str) -> int:
        patients = parse_patient_csv(text)
        for p in patients:
            self._patients[p.external_id] = p
        return len(patients)

    def load_kartes(self, text: str) -> int:
        kartes = parse_karte_csv(text)
        self._kartes.extend(kartes)
        return len(kartes)

    def export_patient_csv(self) -> str:
        return generate_patient_csv(list(self._patients.values()))

    def export_karte_csv(self) -> str:
        return generate_karte_csv(self._kartes)

    def test_connection(self) -> ConnectionResult:
        return ConnectionResult(ok=True, message="CSVモードは接続テスト不要です")

    def get_patient(self, external_id: str) -> EhrPatient | None:
        return self._patients.get(external_id)

    def search_patients(self, name: str = "", tel: str = "", birthday: str = "") -> list[EhrPatient]:
        tel = normalize_jp_phone(tel) if tel else ""
        results = []
        for p in self._patients.values():
            if name and name not in p.name and name not in p.name_kana:
                continue
            if tel and tel not in p.tel:
                continue
            if birthday and p.birthday != birthday:
                continue
            results.append(p)
        return results

    def push_patient(self, patient: EhrPatient) -> str:
        external_id = patient.external_id or f"CSV{len(self._patients) + 1:05d}"
        patient.external_id = external_id
        self._patients[external_id] = patient
        return external_id

    def get_karte_list(self, patient_external_id: str) -> list[EhrKarte]:
        return [k for k in self._kartes if k.patient_external_id == patient_external_id]

    def push_karte(self, karte: EhrKarte) -> None:
        self._kartes.append(karte)
