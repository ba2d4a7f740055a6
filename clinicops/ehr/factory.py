"""
工厂函数：按租户设置 ehr.provider 返回对应的 EHR Adapter。

新增后端只需：
  1. 新建 Adapter 类（继承 BaseEhrAdapter）
  2. 在 _build_registry() 加一行
  同步逻辑不需要改动。

租户设置（category="ehr"）：
  provider                                    orca / csv / fhir
  orca_host, orca_port, orca_user, orca_password, orca_is_web
  fhir_base_url, fhir_auth_type, fhir_token, fhir_username, fhir_password
"""

import logging

from ..settings_store import resolve_setting
from .base import BaseEhrAdapter
from .types import FhirConfig, OrcaConfig

logger = logging.getLogger(__name__)

DEFAULT_ORCA_PORT = 8000


def _orca_config(tenant_id) -> OrcaConfig:
    port = resolve_setting(tenant_id, "ehr.orca_port")
    try:
        port = int(port) if port else DEFAULT_ORCA_PORT
    except ValueError:
        logger.warning("[ehr] tenant=%s orca_port=%r 不是数字，使用默认值", tenant_id, port)
        port = DEFAULT_ORCA_PORT
    return OrcaConfig(
        host=resolve_setting(tenant_id, "ehr.orca_host", "localhost"),
        port=port,
        user=resolve_setting(tenant_id, "ehr.orca_user"),
        password=resolve_setting(tenant_id, "ehr.orca_password"),
        is_web=resolve_setting(tenant_id, "ehr.orca_is_web") == "true",
    )


def _fhir_config(tenant_id) -> FhirConfig:
    return FhirConfig(
        base_url=resolve_setting(tenant_id, "ehr.fhir_base_url"),
        auth_type=resolve_setting(tenant_id, "ehr.fhir_auth_type", "bearer"),
        token=resolve_setting(tenant_id, "ehr.fhir_token"),
        username=resolve_setting(tenant_id, "ehr.fhir_username"),
        password=resolve_setting(tenant_id, "ehr.fhir_password"),
    )


# ── 注册表 ──────────────────────────────────────────────────────────────────
# key: ehr.provider 的值
# value: tenant_id → Adapter 实例
def _build_registry() -> dict:
    # 延迟导入，避免循环依赖
    from .csv_adapter import CsvAdapter
    from .fhir import FhirAdapter
    from .orca import OrcaAdapter

    return {
        "orca": lambda tenant_id: OrcaAdapter(_orca_config(tenant_id)),
        "csv":  lambda tenant_id: CsvAdapter(),
        "fhir": lambda tenant_id: FhirAdapter(_fhir_config(tenant_id)),
    }


def get_ehr_adapter(tenant_id, provider: str | None = None) -> BaseEhrAdapter | None:
    """
    provider 不传时读租户设置 ehr.provider。未配置或未知 → None（调用方自行提示）。
    """
    provider = provider or resolve_setting(tenant_id, "ehr.provider")
    if not provider:
        return None

    builder = _build_registry().get(provider)
    if builder is None:
        logger.warning("[ehr] tenant=%s 未知的 provider=%r", tenant_id, provider)
        return None
    return builder(tenant_id)
