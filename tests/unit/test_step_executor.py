"""
Unit tests for step enrollment + StepExecutor：
1. 报名：第一个步骤、重复报名忽略、没有步骤不报名
2. 触发器：follow / tag / keyword（exact / partial / regex）
3. 发送步骤：插值、MessageLog、没有 line_uid 时跳过发送
4. 条件分岐：true / false / 未指定目标
5. 退出条件：exit / jump
6. tag / mark 步骤、场景停用、单个 enrollment 出错不影响其他
"""
from unittest.mock import patch

import pytest

from clinicops.models import MessageLog, PatientMark, PatientTag, StepEnrollment, StepScenario
from clinicops.scenarios.enrollment import (
    check_follow_trigger,
    check_keyword_trigger,
    check_tag_trigger,
    enroll_patient,
    exit_all_enrollments,
    keyword_matches,
)
from clinicops.scenarios.executor import StepExecutor, render_step_text
from tests.conftest import (
    FakeMessenger,
    MessageTemplateFactory,
    PatientFactory,
    PatientTagFactory,
    StepEnrollmentFactory,
    StepItemFactory,
    StepScenarioFactory,
    jst,
)

NOW = jst(2026, 2, 17, 9, 5)
TAG_RULE = [{'type': 'tag', 'tag_ids': [1], 'tag_match': 'any_include'}]


def _scenario(*steps, **scenario_fields):
    """按顺序建步骤，sort_order = 下标。"""
    scenario = StepScenarioFactory(**scenario_fields)
    for index, fields in enumerate(steps):
        StepItemFactory(scenario=scenario, sort_order=index, **fields)
    return scenario


def _run(messenger=None):
    messenger = messenger or FakeMessenger()
    result = StepExecutor(messenger).process_due(now=NOW)
    return result, messenger


def _reload(enrollment):
    return StepEnrollment.objects.get(id=enrollment.id)


# -------------------------------------------------------------------
# Enrollment
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestEnrollPatient:

    def test_enrolls_at_first_step(self):
        scenario = _scenario({'delay_type': 'days', 'delay_value': 1, 'send_time': '10:00'})

        enrollment = enroll_patient(None, scenario.id, 'P0001', 'U0001', now=NOW)

        assert enrollment.current_step_order == 0
        assert enrollment.status == 'active'
        assert enrollment.next_send_at == jst(2026, 2, 18, 10, 0)
        assert StepScenario.objects.get(id=scenario.id).total_enrolled == 1

    def test_duplicate_ignored(self):
        scenario = _scenario({})
        enroll_patient(None, scenario.id, 'P0001', now=NOW)

        assert enroll_patient(None, scenario.id, 'P0001', now=NOW) is None
        assert StepEnrollment.objects.count() == 1
        assert StepScenario.objects.get(id=scenario.id).total_enrolled == 1

    def test_no_steps(self):
        scenario = StepScenarioFactory()
        assert enroll_patient(None, scenario.id, 'P0001', now=NOW) is None

    def test_other_tenant_scenario(self):
        scenario = _scenario({}, tenant_id='clinic-a')
        assert enroll_patient('clinic-b', scenario.id, 'P0001', now=NOW) is None

    def test_condition_first_step_due_now(self):
        scenario = _scenario({'step_type': 'condition', 'delay_type': 'days', 'delay_value': 3})
        assert enroll_patient(None, scenario.id, 'P0001', now=NOW).next_send_at == NOW


@pytest.mark.django_db
class TestTriggers:

    def test_follow(self):
        _scenario({}, trigger_type='follow')
        _scenario({}, trigger_type='follow', is_enabled=False)
        _scenario({}, trigger_type='tag', trigger_tag_id=1)

        assert check_follow_trigger(None, 'P0001', 'U0001', now=NOW) == 1

    def test_tag(self):
        _scenario({}, trigger_type='tag', trigger_tag_id=1)
        _scenario({}, trigger_type='tag', trigger_tag_id=2)

        assert check_tag_trigger(None, 'P0001', 2, now=NOW) == 1

    def test_keyword(self):
        _scenario({}, trigger_type='keyword', trigger_keyword='予約', keyword_match='partial')
        _scenario({}, trigger_type='keyword', trigger_keyword='キャンセル', keyword_match='exact')

        assert check_keyword_trigger(None, 'P0001', '予約したいです', now=NOW) == 1
        assert check_keyword_trigger(None, 'P0002', ' キャンセル ', now=NOW) == 1

    @pytest.mark.parametrize('keyword, match_type, text, expected', [
        ('予約', 'exact', '予約', True),
        ('予約', 'exact', '予約する', False),
        ('予約', 'partial', '明日の予約', True),
        (r'^\d{4}$', 'regex', '1234', True),
        (r'^\d{4}$', 'regex', '12345', False),
        ('[', 'regex', '[', False),
        ('', 'partial', 'anything', False),
    ])
    def test_keyword_matches(self, keyword, match_type, text, expected):
        assert keyword_matches(keyword, match_type, text) is expected

    def test_exit_all(self):
        StepEnrollmentFactory(patient_id='P0001')
        StepEnrollmentFactory(patient_id='P0001')
        StepEnrollmentFactory(patient_id='P0001', status='completed')

        assert exit_all_enrollments(None, 'P0001', reason='blocked', now=NOW) == 2
        exited = StepEnrollment.objects.filter(status='exited')
        assert {e.exit_reason for e in exited} == {'blocked'}
        assert all(e.next_send_at is None for e in exited)


# -------------------------------------------------------------------
# StepExecutor
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestSendSteps:

    def test_send_and_advance(self):
        PatientFactory(patient_id='P0001', name='田中太郎')
        scenario = _scenario(
            {'content': 'こんにちは {name} さん ({patient_id})'},
            {'delay_type': 'days', 'delay_value': 1, 'send_time': '10:00'},
        )
        enrollment = StepEnrollmentFactory(scenario=scenario)

        result, messenger = _run()

        assert result == {'processed': 1, 'errors': 0}
        assert messenger.sent[0]['messages'] == [{'type': 'text', 'text': 'こんにちは 田中太郎 さん (P0001)'}]
        enrollment = _reload(enrollment)
        assert enrollment.current_step_order == 1
        assert enrollment.next_send_at == jst(2026, 2, 18, 10, 0)
        log = MessageLog.objects.get()
        assert (log.event_type, log.status, log.campaign_id) == ('step_delivery', 'sent', str(scenario.id))

    def test_last_step_completes(self):
        scenario = _scenario({})
        enrollment = StepEnrollmentFactory(scenario=scenario)

        _run()

        enrollment = _reload(enrollment)
        assert enrollment.status == 'completed'
        assert enrollment.next_send_at is None
        assert StepScenario.objects.get(id=scenario.id).total_completed == 1

    def test_not_due_untouched(self):
        scenario = _scenario({})
        StepEnrollmentFactory(scenario=scenario, next_send_at=jst(2026, 2, 17, 10, 0))

        result, messenger = _run()

        assert result['processed'] == 0
        assert messenger.sent == []

    def test_template_step(self):
        template = MessageTemplateFactory(content='テンプレート {name}')
        PatientFactory(patient_id='P0001', name='鈴木')
        scenario = _scenario({'step_type': 'send_template', 'template_id': template.id, 'content': None})
        StepEnrollmentFactory(scenario=scenario)

        _, messenger = _run()

        assert messenger.sent[0]['messages'][0]['text'] == 'テンプレート 鈴木'

    def test_missing_line_uid_skips_send_but_advances(self):
        scenario = _scenario({}, {})
        enrollment = StepEnrollmentFactory(scenario=scenario, line_uid=None)

        _, messenger = _run()

        assert messenger.sent == []
        assert _reload(enrollment).current_step_order == 1

    def test_failed_push_logged_and_advances(self):
        scenario = _scenario({}, {})
        enrollment = StepEnrollmentFactory(scenario=scenario, line_uid='U_BAD')

        _run(FakeMessenger(raise_handles={'U_BAD'}))

        assert MessageLog.objects.get().status == 'failed'
        assert _reload(enrollment).current_step_order == 1


def test_render_step_text_without_name():
    assert render_step_text('{name}様', 'P1', None) == '様'


@pytest.mark.django_db
class TestConditionSteps:

    def _branching(self, **condition):
        fields = {'step_type': 'condition', 'condition_rules': TAG_RULE, 'content': None}
        fields.update(condition)
        return _scenario(
            fields,
            {'content': 'A'},
            {'content': 'B', 'delay_type': 'hours', 'delay_value': 2},
        )

    def test_true_branch(self):
        PatientTagFactory(patient_id='P0001', tag_id=1)
        enrollment = StepEnrollmentFactory(scenario=self._branching(branch_true_step=2, branch_false_step=1))

        _, messenger = _run()

        enrollment = _reload(enrollment)
        assert enrollment.current_step_order == 2
        assert enrollment.next_send_at == jst(2026, 2, 17, 11, 5)
        assert messenger.sent == []

    def test_false_branch(self):
        enrollment = StepEnrollmentFactory(scenario=self._branching(branch_true_step=2, branch_false_step=1))
        _run()
        assert _reload(enrollment).current_step_order == 1

    def test_true_without_target_goes_to_next_step(self):
        PatientTagFactory(patient_id='P0001', tag_id=1)
        enrollment = StepEnrollmentFactory(scenario=self._branching())
        _run()
        assert _reload(enrollment).current_step_order == 1

    def test_false_without_target_completes(self):
        enrollment = StepEnrollmentFactory(scenario=self._branching())
        _run()
        assert _reload(enrollment).status == 'completed'

    def test_dangling_false_target_completes(self):
        enrollment = StepEnrollmentFactory(scenario=self._branching(branch_false_step=9))
        _run()
        assert _reload(enrollment).status == 'completed'

    def test_empty_rules_advance_to_next_step(self):
        PatientTagFactory(patient_id='P0001', tag_id=1)
        scenario = self._branching(condition_rules=[], branch_true_step=2, branch_false_step=2)
        enrollment = StepEnrollmentFactory(scenario=scenario)

        _run()

        enrollment = _reload(enrollment)
        assert enrollment.status == 'active'
        assert enrollment.current_step_order == 1

    def test_unknown_rule_takes_false_branch(self):
        PatientTagFactory(patient_id='P0001', tag_id=1)
        scenario = self._branching(condition_rules=[{'type': 'weather'}], branch_false_step=2)
        enrollment = StepEnrollmentFactory(scenario=scenario)
        _run()
        assert _reload(enrollment).current_step_order == 2


@pytest.mark.django_db
class TestExitConditions:

    def test_exit(self):
        PatientTagFactory(patient_id='P0001', tag_id=1)
        scenario = _scenario({'exit_condition_rules': TAG_RULE}, {})
        enrollment = StepEnrollmentFactory(scenario=scenario)

        _, messenger = _run()

        enrollment = _reload(enrollment)
        assert enrollment.status == 'exited'
        assert enrollment.exit_reason == 'exit_condition'
        assert messenger.sent == []

    def test_jump(self):
        PatientTagFactory(patient_id='P0001', tag_id=1)
        scenario = _scenario({'exit_condition_rules': TAG_RULE, 'exit_action': 'jump', 'exit_jump_to': 2}, {}, {})
        enrollment = StepEnrollmentFactory(scenario=scenario)

        _run()

        enrollment = _reload(enrollment)
        assert enrollment.status == 'active'
        assert enrollment.current_step_order == 2

    def test_not_met_runs_step(self):
        scenario = _scenario({'exit_condition_rules': TAG_RULE}, {})
        StepEnrollmentFactory(scenario=scenario)

        _, messenger = _run()

        assert len(messenger.sent) == 1


@pytest.mark.django_db
class TestStateSteps:

    def test_tag_add_and_remove(self):
        PatientTagFactory(patient_id='P0001', tag_id=3)
        scenario = _scenario(
            {'step_type': 'tag_add', 'tag_id': 5, 'content': None},
            {'step_type': 'tag_remove', 'tag_id': 3, 'content': None},
        )
        StepEnrollmentFactory(scenario=scenario)

        _run()
        assert set(PatientTag.objects.values_list('tag_id', flat=True)) == {3, 5}
        assert PatientTag.objects.get(tag_id=5).assigned_by == 'step_delivery'

        _run()
        assert set(PatientTag.objects.values_list('tag_id', flat=True)) == {5}

    def test_mark_change(self):
        scenario = _scenario({'step_type': 'mark_change', 'mark': 'hot', 'content': None})
        StepEnrollmentFactory(scenario=scenario)

        _run()

        assert PatientMark.objects.get(patient_id='P0001').mark == 'hot'


@pytest.mark.django_db
class TestProcessDue:

    def test_disabled_scenario_pauses(self):
        scenario = _scenario({}, is_enabled=False)
        enrollment = StepEnrollmentFactory(scenario=scenario)

        result, messenger = _run()

        assert result['processed'] == 0
        enrollment = _reload(enrollment)
        assert enrollment.status == 'paused'
        assert enrollment.exit_reason == 'scenario_disabled'
        assert messenger.sent == []

    def test_missing_step_completes(self):
        scenario = _scenario({})
        enrollment = StepEnrollmentFactory(scenario=scenario, current_step_order=5)
        _run()
        assert _reload(enrollment).status == 'completed'

    def test_one_error_does_not_stop_others(self):
        scenario = _scenario({'exit_condition_rules': TAG_RULE}, {})
        StepEnrollmentFactory(scenario=scenario, patient_id='P_BAD', line_uid='U_BAD')
        good = StepEnrollmentFactory(scenario=scenario, patient_id='P_GOOD', line_uid='U_GOOD')

        def load_state(tenant_id, patient_id):
            if patient_id == 'P_BAD':
                raise RuntimeError('db hiccup')
            return original(tenant_id, patient_id)

        from clinicops.scenarios import executor
        original = executor.load_patient_state
        with patch.object(executor, 'load_patient_state', side_effect=load_state):
            result, messenger = _run()

        assert result == {'processed': 1, 'errors': 1}
        assert [s['handle'] for s in messenger.sent] == ['U_GOOD']
        assert _reload(good).current_step_order == 1

    def test_one_step_per_tick(self):
        scenario = _scenario({}, {}, {})
        enrollment = StepEnrollmentFactory(scenario=scenario)

        _run()

        # 第二步 delay=0，next_send_at == now，但本次 tick 不再继续
        enrollment = _reload(enrollment)
        assert enrollment.current_step_order == 1
        assert enrollment.next_send_at == NOW
