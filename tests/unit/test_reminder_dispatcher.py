"""
Unit tests for ReminderDispatcher：
1. 窗口内发送、窗口外不发
2. 同一天重复调用不重复发送（reminder_sent_log）
3. 没有 LINE UID / 已取消预约 / 停用规则
4. 发送失败不写日志，下次调用会重试
5. 文本模板插值、Flex 格式（标题随 target_day_offset）
6. 单条预约渲染出错只计 failed
7. 手动一斉提醒的预览和发送
"""
import pytest

from clinicops.models import MessageLog, ReminderSentLog
from clinicops.scheduling.dispatcher import ReminderDispatcher, render_reminder
from clinicops.scheduling.manual import preview_manual_reminders, send_manual_reminders
from tests.conftest import (
    FakeMessenger,
    PatientFactory,
    ReminderRuleFactory,
    ReservationFactory,
    jst,
)

IN_WINDOW = jst(2026, 2, 17, 19, 0)
OUT_OF_WINDOW = jst(2026, 2, 17, 12, 0)


def _setup(line_id='U_TANAKA', **reservation):
    patient = PatientFactory(patient_id='P0001', name='田中太郎', line_id=line_id)
    rule = ReminderRuleFactory()
    ReservationFactory(reserve_id='R1', patient_id='P0001', **reservation)
    return patient, rule


@pytest.mark.django_db
class TestDispatch:

    def test_sends_in_window(self):
        _setup()
        messenger = FakeMessenger()

        result = ReminderDispatcher(messenger).dispatch(now=IN_WINDOW)

        assert result.sent == 1
        assert result.rules_checked == 1
        assert messenger.sent[0]['handle'] == 'U_TANAKA'
        assert messenger.sent[0]['messages'][0]['text'] == '田中太郎様 2026/2/18 10:00のご予約です'
        log = ReminderSentLog.objects.get()
        assert log.reservation_id == 'R1'
        assert str(log.sent_date) == '2026-02-17'
        assert MessageLog.objects.filter(event_type='reminder', status='sent').count() == 1

    def test_out_of_window_sends_nothing(self):
        _setup()
        messenger = FakeMessenger()

        result = ReminderDispatcher(messenger).dispatch(now=OUT_OF_WINDOW)

        assert result.sent == 0
        assert result.rules_checked == 1
        assert messenger.sent == []

    def test_second_call_same_day_is_skipped(self):
        _setup()
        messenger = FakeMessenger()
        dispatcher = ReminderDispatcher(messenger)

        dispatcher.dispatch(now=jst(2026, 2, 17, 18, 50))
        second = dispatcher.dispatch(now=jst(2026, 2, 17, 18, 55))

        assert second.sent == 0
        assert second.skipped == 1
        assert len(messenger.sent) == 1
        assert ReminderSentLog.objects.count() == 1

    def test_no_line_uid_counted(self):
        _setup(line_id=None)
        result = ReminderDispatcher(FakeMessenger()).dispatch(now=IN_WINDOW)
        assert result.no_uid == 1
        assert result.sent == 0

    def test_canceled_reservation_ignored(self):
        _setup(status='canceled')
        result = ReminderDispatcher(FakeMessenger()).dispatch(now=IN_WINDOW)
        assert result.sent == result.no_uid == result.failed == 0

    def test_disabled_rule_not_checked(self):
        _, rule = _setup()
        rule.is_enabled = False
        rule.save()

        result = ReminderDispatcher(FakeMessenger()).dispatch(now=IN_WINDOW)
        assert result.rules_checked == 0

    def test_failed_send_is_retried_next_tick(self):
        _setup()
        failing = FakeMessenger(fail_handles={'U_TANAKA'})

        first = ReminderDispatcher(failing).dispatch(now=jst(2026, 2, 17, 18, 50))
        assert first.failed == 1
        assert ReminderSentLog.objects.count() == 0

        second = ReminderDispatcher(FakeMessenger()).dispatch(now=jst(2026, 2, 17, 18, 55))
        assert second.sent == 1

    def test_send_exception_counts_as_failed(self):
        _setup()
        result = ReminderDispatcher(FakeMessenger(raise_handles={'U_TANAKA'})).dispatch(now=IN_WINDOW)
        assert result.failed == 1
        assert ReminderSentLog.objects.count() == 0

    def test_one_failure_does_not_stop_others(self):
        PatientFactory(patient_id='P0001', line_id='U_BAD')
        PatientFactory(patient_id='P0002', line_id='U_GOOD')
        ReminderRuleFactory()
        ReservationFactory(reserve_id='R1', patient_id='P0001', reserved_time='10:00:00')
        ReservationFactory(reserve_id='R2', patient_id='P0002', reserved_time='11:00:00')

        result = ReminderDispatcher(FakeMessenger(raise_handles={'U_BAD'})).dispatch(now=IN_WINDOW)

        assert result.failed == 1
        assert result.sent == 1

    def test_render_error_does_not_stop_others(self):
        PatientFactory(patient_id='P0001', line_id='U_BROKEN')
        PatientFactory(patient_id='P0002', line_id='U_GOOD')
        ReminderRuleFactory(message_format='flex', message_template='')
        # 时刻为空的预约渲染 Flex 时会出错
        ReservationFactory(reserve_id='R1', patient_id='P0001', reserved_time='')
        ReservationFactory(reserve_id='R2', patient_id='P0002', reserved_time='10:00:00')
        messenger = FakeMessenger()

        result = ReminderDispatcher(messenger).dispatch(now=IN_WINDOW)

        assert result.failed == 1
        assert result.sent == 1
        assert [entry['handle'] for entry in messenger.sent] == ['U_GOOD']
        assert list(ReminderSentLog.objects.values_list('reservation_id', flat=True)) == ['R2']

    def test_rules_scoped_to_their_tenant(self):
        PatientFactory(patient_id='P0001', tenant_id='clinic-a', line_id='U_A')
        ReservationFactory(reserve_id='R1', patient_id='P0001', tenant_id='clinic-a')
        ReminderRuleFactory(tenant_id='clinic-b')

        messenger = FakeMessenger()
        result = ReminderDispatcher(messenger).dispatch(now=IN_WINDOW)

        assert result.sent == 0
        assert messenger.sent == []

    def test_target_day_offset_zero_targets_today(self):
        PatientFactory(patient_id='P0001', line_id='U_TODAY')
        ReminderRuleFactory(target_day_offset=0, send_hour=8, send_minute=0)
        ReservationFactory(reserve_id='R1', patient_id='P0001', reserved_date='2026-02-17')

        result = ReminderDispatcher(FakeMessenger()).dispatch(now=jst(2026, 2, 17, 8, 0))
        assert result.sent == 1


@pytest.mark.django_db
class TestRenderReminder:

    def test_flex_format(self):
        rule = ReminderRuleFactory(message_format='flex', message_template='')
        reservation = ReservationFactory()
        message = render_reminder(rule, reservation)
        assert message['type'] == 'flex'
        assert message['altText'].startswith('【明日のご予約】2/18')

    def test_flex_header_for_same_day_rule(self):
        rule = ReminderRuleFactory(message_format='flex', message_template='', target_day_offset=0)
        reservation = ReservationFactory(reserved_date='2026-02-17')
        message = render_reminder(rule, reservation)
        assert message['altText'].startswith('【本日のご予約】2/17')
        assert message['contents']['header']['contents'][0]['text'] == '本日のご予約'

    def test_patient_id_placeholder(self):
        rule = ReminderRuleFactory(message_template='ID: {patient_id}')
        reservation = ReservationFactory(patient_id='P0042')
        assert render_reminder(rule, reservation)['text'] == 'ID: P0042'


@pytest.mark.django_db
class TestManualReminder:

    def test_preview_counts_sendable(self):
        PatientFactory(patient_id='P0001', line_id='U1')
        PatientFactory(patient_id='P0002', line_id=None)
        ReservationFactory(patient_id='P0001', reserved_time='10:00:00')
        ReservationFactory(patient_id='P0002', reserved_time='11:00:00')

        preview = preview_manual_reminders(None, '2026-02-18')

        assert preview['summary'] == {'total': 2, 'sendable': 1, 'no_uid': 1}
        assert '2026/2/18 10:00-10:15' in preview['sample_message']

    def test_send_reports_each_patient(self):
        PatientFactory(patient_id='P0001', line_id='U1')
        PatientFactory(patient_id='P0002', line_id='U2')
        ReservationFactory(patient_id='P0001')
        ReservationFactory(patient_id='P0002', reserved_time='11:00:00')
        messenger = FakeMessenger(fail_handles={'U2'})

        result = send_manual_reminders(None, '2026-02-18', messenger)

        assert result['summary'] == {'total': 2, 'sent': 1, 'failed': 1, 'no_uid': 0}
        assert MessageLog.objects.filter(message_type='reminder').count() == 2
