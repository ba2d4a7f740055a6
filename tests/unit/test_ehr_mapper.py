"""
Unit tests for EhrMapper and phone normalization：
1. normalize_jp_phone 的各种输入
2. 患者记录 → EhrPatient（问诊回答兜底）
3. EhrPatient → 部分更新 dict（空字段不覆盖）
4. 问诊 ⇄ EhrKarte
"""
from datetime import datetime, timezone

import pytest

from clinicops.ehr.mapper import from_ehr_karte, from_ehr_patient, to_ehr_karte, to_ehr_patient
from clinicops.ehr.phone import normalize_jp_phone
from clinicops.ehr.types import EhrKarte, EhrPatient


@pytest.mark.parametrize('raw, expected', [
    ('090-1234-5678', '09012345678'),
    ('+81 90-1234-5678', '09012345678'),
    ('819012345678', '09012345678'),
    ('9012345678', '09012345678'),
    ('0081312345678', '0312345678'),
    ('009012345678', '09012345678'),
    ('(03) 1234-5678', '0312345678'),
    ('', ''),
    (None, ''),
    ('なし', ''),
])
def test_normalize_jp_phone(raw, expected):
    assert normalize_jp_phone(raw) == expected


def test_short_number_starting_81_kept():
    # 8101234 这种短号不当作国际区号
    assert normalize_jp_phone('8101234') == '08101234'


class TestToEhrPatient:

    def test_from_patient_dict(self):
        patient = {
            'patient_id': 'P0001', 'name': ' 田中太郎 ', 'name_kana': 'タナカタロウ',
            'sex': '男', 'birthday': '1985-04-01', 'tel': '09012345678',
        }
        ehr = to_ehr_patient(patient)
        assert ehr.external_id == 'P0001'
        assert ehr.name == '田中太郎'
        assert ehr.postal_code == ''

    def test_intake_answers_fill_gaps(self):
        patient = {'patient_id': 'P0001', 'name': '田中太郎', 'sex': ''}
        intake = {'answers': {'カナ': 'タナカタロウ', '性別': '男', '郵便番号': '150-0001', '住所': '東京都'}}

        ehr = to_ehr_patient(patient, intake)

        assert ehr.name_kana == 'タナカタロウ'
        assert ehr.sex == '男'
        assert ehr.postal_code == '150-0001'
        assert ehr.address == '東京都'

    def test_patient_value_wins_over_answers(self):
        ehr = to_ehr_patient({'patient_id': 'P1', 'sex': '女'}, {'answers': {'性別': '男'}})
        assert ehr.sex == '女'

    def test_non_dict_answers_ignored(self):
        assert to_ehr_patient({'patient_id': 'P1'}, {'answers': 'broken'}).sex == ''


class TestFromEhrPatient:

    def test_empty_fields_omitted(self):
        updates = from_ehr_patient(EhrPatient(external_id='00001', name='田中太郎', tel='+81-90-1234-5678'))
        assert updates == {'name': '田中太郎', 'tel': '09012345678'}

    def test_external_id_not_copied(self):
        assert 'patient_id' not in from_ehr_patient(EhrPatient(external_id='00001', name='x'))


class TestKarte:

    def test_intake_to_karte_uses_jst_date(self):
        # 2026-02-17 16:00 UTC = 2026-02-18 01:00 JST
        intake = {'id': 12, 'patient_id': 'P0001', 'note': '所見', 'created_at': datetime(2026, 2, 17, 16, 0, tzinfo=timezone.utc)}
        karte = to_ehr_karte(intake, {'patient_id': 'P0001'})

        assert karte.external_id == '12'
        assert karte.patient_external_id == 'P0001'
        assert karte.date == '2026-02-18'
        assert karte.content == '所見'

    def test_string_date_truncated(self):
        karte = to_ehr_karte({'created_at': '2026-02-17T09:00:00+09:00', 'patient_id': 'P0002'}, None)
        assert karte.date == '2026-02-17'
        assert karte.patient_external_id == 'P0002'

    def test_karte_to_note(self):
        karte = EhrKarte(patient_external_id='00001', date='2026-02-17', content='頭痛',
                         diagnosis='片頭痛', prescription='ロキソニン')
        assert from_ehr_karte(karte) == {'note': '頭痛\n【傷病名】片頭痛\n【処方】ロキソニン'}

    def test_karte_without_diagnosis(self):
        karte = EhrKarte(patient_external_id='00001', date='2026-02-17', prescription='ロキソニン')
        assert from_ehr_karte(karte) == {'note': '【処方】ロキソニン'}
