"""
ConditionEvaluator — 判断患者当前状态是否满足步骤条件。

规则格式：
  {"type": "tag", "tag_ids": [1, 2], "tag_match": "any_include"}
  {"type": "mark", "mark_values": ["hot", "none"]}
  {"type": "answer", "field": "性別", "operator": "eq", "value": "女"}
  {"type": "visit_count", "behavior_operator": ">=", "behavior_value": "2"}
  {"type": "purchase_amount", "behavior_operator": ">=", "behavior_value": "30000"}

多条规则之间是 AND。空列表 → False。
未知类型或格式不对的规则 → False（fail-closed），只记 warning，不抛异常，
这样一条坏规则不会中断整批处理。
"""

import logging
import operator
from dataclasses import dataclass, field

from django.db.models import Sum

from ..models import Intake, Order, PatientMark, PatientTag, Reservation
from ..repository import TenantRepository

logger = logging.getLogger(__name__)

_tags = TenantRepository(PatientTag)
_marks = TenantRepository(PatientMark)
_intakes = TenantRepository(Intake)
_reservations = TenantRepository(Reservation)
_orders = TenantRepository(Order)

NO_MARK = "none"

_BEHAVIOR_OPERATORS = {
    ">=": operator.ge,
    "<=": operator.le,
    ">": operator.gt,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass
class PatientState:
    tag_ids: set[int] = field(default_factory=set)
    mark: str | None = None
    answers: dict = field(default_factory=dict)
    visit_count: int = 0
    purchase_amount: int = 0


def load_patient_state(tenant_id, patient_id: str) -> PatientState:
    mark_row = _marks.first(tenant_id, patient_id=patient_id)
    intake = _intakes.filter(tenant_id, patient_id=patient_id).order_by("-created_at", "-id").first()
    purchase = _orders.filter(tenant_id, patient_id=patient_id, status="confirmed").aggregate(total=Sum("amount"))
    return PatientState(
        tag_ids=set(_tags.filter(tenant_id, patient_id=patient_id).values_list("tag_id", flat=True)),
        mark=mark_row.mark if mark_row else None,
        answers=dict(intake.answers or {}) if intake else {},
        visit_count=_reservations.filter(tenant_id, patient_id=patient_id).exclude(status="canceled").count(),
        purchase_amount=purchase["total"] or 0,
    )


# ── 单条规则 ───────────────────────────────────────────────────────────────

def _tag_ids(rule: dict) -> list[int]:
    ids = rule.get("tag_ids")
    if ids is None and rule.get("tag_id") is not None:
        ids = [rule["tag_id"]]
    return [int(i) for i in (ids or [])]


def _evaluate_tag(rule: dict, state: PatientState) -> bool:
    ids = _tag_ids(rule)
    if not ids:
        return True

    present = [i in state.tag_ids for i in ids]
    match = rule.get("tag_match") or "any_include"

    if match == "any_include":
        return any(present)
    if match == "all_include":
        return all(present)
    if match in ("none_include", "any_exclude"):
        return not any(present)
    if match == "all_exclude":
        return not all(present)

    logger.warning("[condition] 未知的 tag_match=%r，按 False 处理", match)
    return False


def _evaluate_mark(rule: dict, state: PatientState) -> bool:
    values = rule.get("mark_values") or []
    return (state.mark or NO_MARK) in values


def _evaluate_answer(rule: dict, state: PatientState) -> bool:
    key = rule.get("field")
    if not key:
        return False

    op = rule.get("operator") or "eq"
    actual = state.answers.get(key)
    expected = rule.get("value")

    if op == "exists":
        return actual not in (None, "")
    if actual is None:
        return op == "neq"

    actual = str(actual)
    if op == "eq":
        return actual == str(expected)
    if op == "neq":
        return actual != str(expected)
    if op == "contains":
        return str(expected) in actual

    logger.warning("[condition] 未知的 answer operator=%r，按 False 处理", op)
    return False


def _evaluate_behavior(actual: int, rule: dict) -> bool:
    compare = _BEHAVIOR_OPERATORS.get(rule.get("behavior_operator") or ">=")
    if compare is None:
        return False
    try:
        threshold = int(rule.get("behavior_value"))
    except (TypeError, ValueError):
        return False
    return compare(actual, threshold)


def evaluate_rule(rule, state: PatientState) -> bool:
    if not isinstance(rule, dict):
        logger.warning("[condition] 规则格式不对: %r", rule)
        return False

    rule_type = rule.get("type")
    try:
        if rule_type == "tag":
            return _evaluate_tag(rule, state)
        if rule_type == "mark":
            return _evaluate_mark(rule, state)
        if rule_type == "answer":
            return _evaluate_answer(rule, state)
        if rule_type == "visit_count":
            return _evaluate_behavior(state.visit_count, rule)
        if rule_type == "purchase_amount":
            return _evaluate_behavior(state.purchase_amount, rule)
    except (TypeError, ValueError) as exc:
        logger.warning("[condition] 规则解析失败 %r: %s", rule, exc)
        return False

    logger.warning("[condition] 未知的条件类型 type=%r，按 False 处理", rule_type)
    return False


def evaluate_conditions(rules, state: PatientState) -> bool:
    if not rules:
        return False
    return all(evaluate_rule(rule, state) for rule in rules)
