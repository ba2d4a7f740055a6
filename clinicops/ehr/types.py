"""
EHR 中立模型 — 所有 Adapter 的输入输出都是这几个结构。

EhrPatient / EhrKarte 的字段一律是 str，缺省 ""，不会出现 None。
"""

from dataclasses import asdict, dataclass

PROVIDERS = ("orca", "csv", "fhir")


@dataclass
class EhrPatient:
    external_id: str = ""
    name: str = ""
    name_kana: str = ""
    sex: str = ""           # 男 / 女，或来源系统的原始值
    birthday: str = ""      # ISO 8601: "YYYY-MM-DD"
    tel: str = ""
    postal_code: str = ""
    address: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EhrKarte:
    patient_external_id: str = ""
    date: str = ""
    content: str = ""
    diagnosis: str = ""
    prescription: str = ""
    external_id: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConnectionResult:
    ok: bool
    message: str


@dataclass
class SyncResult:
    provider: str
    direction: str          # push / pull
    resource_type: str      # patient / karte
    status: str             # success / error / skipped
    patient_id: str = ""
    external_id: str = ""
    detail: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OrcaConfig:
    host: str = "localhost"
    port: int = 8000
    user: str = ""
    password: str = ""
    is_web: bool = False


@dataclass
class FhirConfig:
    base_url: str = ""
    auth_type: str = "bearer"   # bearer / basic
    token: str = ""
    username: str = ""
    password: str = ""
