"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
"""
from datetime import date, datetime, timedelta, timezone

import factory
import pytest
from rest_framework.test import APIClient

from clinicops.messaging.types import SendResult
from clinicops.models import (
    Intake,
    MessageTemplate,
    Order,
    Patient,
    PatientMark,
    PatientTag,
    ReminderRule,
    Reservation,
    StepEnrollment,
    StepItem,
    StepScenario,
    TenantSetting,
)

JST = timezone(timedelta(hours=9))


def jst(*args) -> datetime:
    """jst(2026, 2, 17, 19, 0) → aware datetime（JST）"""
    return datetime(*args, tzinfo=JST)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    patient_id = factory.Sequence(lambda n: f'P{n:04d}')
    name = '山田太郎'
    name_kana = 'ヤマダタロウ'
    sex = '男'
    birthday = '1990-01-15'
    tel = '09012345678'
    line_id = factory.Sequence(lambda n: f'U{n:032d}')


class PatientTagFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PatientTag

    patient_id = 'P0001'
    tag_id = 1


class PatientMarkFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PatientMark

    patient_id = 'P0001'
    mark = 'red'


class IntakeFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Intake

    patient_id = 'P0001'
    answers = factory.LazyFunction(dict)
    note = None


class ReservationFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Reservation

    reserve_id = factory.Sequence(lambda n: f'R{n:05d}')
    patient_id = 'P0001'
    reserved_date = date(2026, 2, 18)
    reserved_time = '10:00:00'
    status = 'pending'


class ReminderRuleFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = ReminderRule

    name = '前日リマインド'
    send_hour = 19
    send_minute = 0
    target_day_offset = 1
    message_format = 'text'
    message_template = '{name}様 {date} {time}のご予約です'


class StepScenarioFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = StepScenario

    name = '友だち追加シナリオ'
    trigger_type = 'follow'


class StepItemFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = StepItem

    scenario = factory.SubFactory(StepScenarioFactory)
    sort_order = factory.Sequence(lambda n: n)
    delay_type = 'minutes'
    delay_value = 0
    step_type = 'send_text'
    content = 'こんにちは {name} さん'


class StepEnrollmentFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = StepEnrollment

    scenario = factory.SubFactory(StepScenarioFactory)
    patient_id = 'P0001'
    line_uid = 'U0001'
    current_step_order = 0
    status = 'active'
    next_send_at = factory.LazyFunction(lambda: jst(2026, 2, 17, 9, 0))


class OrderFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Order

    patient_id = 'P0001'
    product_code = 'MJL_2.5mg_1m'
    amount = 13000
    account_name = 'タナカ タロウ'
    payment_method = 'bank_transfer'
    status = 'pending_confirmation'


class MessageTemplateFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = MessageTemplate

    name = 'テンプレート'
    content = 'テンプレート本文 {name}'


class TenantSettingFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = TenantSetting

    category = 'line'
    key = 'channel_access_token'
    value = 'tenant-token'


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeMessenger:
    """记录每次 send 调用；fail_handles 里的收件人返回失败，raise_handles 里的抛异常。"""

    backend = 'fake'

    def __init__(self, fail_handles=(), raise_handles=()):
        self.sent = []
        self.fail_handles = set(fail_handles)
        self.raise_handles = set(raise_handles)

    def send(self, handle, messages, tenant_id=None):
        if handle in self.raise_handles:
            raise ConnectionError('network down')
        self.sent.append({'handle': handle, 'messages': messages, 'tenant_id': tenant_id})
        if handle in self.fail_handles:
            return SendResult(ok=False, status_code=500, error='boom')
        return SendResult(ok=True, status_code=200)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """DRF test client for integration tests."""
    return APIClient()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def bank_csv():
    """银行明细 CSV：表头 + 2 条入金 + 1 条出金。"""
    return (
        '日付,摘要,出金,入金,残高\n'
        '2026/02/17,ﾀﾅｶ ﾀﾛｳ,,"13,000",113000\n'
        '2026/02/17,スズキ　ハナコ,,"27,000円",140000\n'
        '2026/02/18,振込手数料,440,,139560\n'
    )
