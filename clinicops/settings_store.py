"""
租户设置解析。

resolve_setting(tenant_id, "line.channel_access_token")
  1. tenant_settings 表里 (tenant_id, category="line", key="channel_access_token")
  2. 找不到或为空 → Django settings / 环境变量兜底（_ENV_FALLBACK 里登记的才有）
  3. 都没有 → default
"""

import os

from django.conf import settings

from .models import TenantSetting
from .repository import TenantRepository

_setting_rows = TenantRepository(TenantSetting)

# key → Django setting 名（同名环境变量）
_ENV_FALLBACK = {
    "line.channel_access_token": "LINE_CHANNEL_ACCESS_TOKEN",
    "ehr.provider": "EHR_PROVIDER",
}


def _split_key(key: str) -> tuple[str, str]:
    category, _, name = key.partition(".")
    if not name:
        return "general", category
    return category, name


def resolve_setting(tenant_id, key: str, default: str = "") -> str:
    category, name = _split_key(key)
    row = _setting_rows.first(tenant_id, category=category, key=name)
    if row is not None and row.value:
        return row.value

    env_name = _ENV_FALLBACK.get(key)
    if env_name:
        value = getattr(settings, env_name, "") or os.getenv(env_name, "")
        if value:
            return value

    return default


def save_setting(tenant_id, key: str, value: str) -> None:
    category, name = _split_key(key)
    _setting_rows.update_or_create(tenant_id, {"category": category, "key": name}, value=value)
