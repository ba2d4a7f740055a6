"""
TenantRepository — 所有按租户隔离的读写都走这里。

tenant_id 是每个方法的第一个位置参数，必须显式传入（None = 单租户默认）。
不存在「当前租户」这种全局状态。

用法：
    patients = TenantRepository(Patient)
    patients.first(tenant_id, patient_id='P001')
"""

from django.db import models


class TenantRepository:

    def __init__(self, model: type[models.Model]):
        self.model = model

    def filter(self, tenant_id, **lookups) -> models.QuerySet:
        return self.model.objects.filter(tenant_id=tenant_id, **lookups)

    def first(self, tenant_id, **lookups):
        return self.filter(tenant_id, **lookups).first()

    def exists(self, tenant_id, **lookups) -> bool:
        return self.filter(tenant_id, **lookups).exists()

    def create(self, tenant_id, **fields):
        return self.model.objects.create(tenant_id=tenant_id, **fields)

    def update(self, tenant_id, lookups: dict, **fields) -> int:
        return self.filter(tenant_id, **lookups).update(**fields)

    def update_or_create(self, tenant_id, lookups: dict, **defaults):
        return self.model.objects.update_or_create(
            tenant_id=tenant_id, defaults=defaults, **lookups,
        )

    def delete(self, tenant_id, **lookups) -> int:
        deleted, _ = self.filter(tenant_id, **lookups).delete()
        return deleted
