"""
ReconciliationMatcher — 银行入金行 × 待确认的银行转账订单。

匹配规则（逐个入金行）：
  候选 = 金额完全一致 + account_name 非空 + 尚未被其他入金行占用
         + 规范化后的汇款人名 == 规范化后的 account_name 或 shipping_name
  多个候选时取订单列表里的第一个（订单按创建时间排序，结果可复现）
  入金行本身不去重：同日同名同额的两行各自独立匹配

reconcile(preview=True) 只做解析 + 匹配，不写库。
"""

import logging
import re
from dataclasses import dataclass, field

from django.db import DatabaseError, transaction

from ..exceptions import BaseAppException, NotFoundError
from ..models import Order
from ..repository import TenantRepository
from ..serializers import serialize_reconcile_result
from .parser import DepositRow, normalize_payer_name, parse_bank_csv

logger = logging.getLogger(__name__)

_orders = TenantRepository(Order)

REASON_NO_PENDING_ORDERS = "照合待ちの注文がありません"
REASON_NOT_FOUND = "該当する注文が見つかりません"

_PAYMENT_ID_RE = re.compile(r"^bt_(\d+)$")


@dataclass
class MatchPair:
    deposit: DepositRow
    order: Order


@dataclass
class UnmatchedRow:
    deposit: DepositRow
    reason: str


@dataclass
class MatchOutcome:
    matched: list[MatchPair] = field(default_factory=list)
    unmatched: list[UnmatchedRow] = field(default_factory=list)


def _order_names(order) -> set[str]:
    names = {normalize_payer_name(order.account_name)}
    if (order.shipping_name or "").strip():
        names.add(normalize_payer_name(order.shipping_name))
    return names


def match_deposits(deposits: list[DepositRow], orders: list) -> MatchOutcome:
    outcome = MatchOutcome()
    if not orders:
        outcome.unmatched = [UnmatchedRow(d, REASON_NO_PENDING_ORDERS) for d in deposits]
        return outcome

    candidates = [o for o in orders if (o.account_name or "").strip()]
    names = {o.pk: _order_names(o) for o in candidates}
    used = set()

    for deposit in deposits:
        found = None
        for order in candidates:
            if order.pk in used or order.amount != deposit.amount:
                continue
            if deposit.normalized_name in names[order.pk]:
                found = order
                break

        if found is None:
            outcome.unmatched.append(UnmatchedRow(deposit, REASON_NOT_FOUND))
        else:
            used.add(found.pk)
            outcome.matched.append(MatchPair(deposit, found))

    return outcome


# ── 写回 ───────────────────────────────────────────────────────────────────

def next_payment_id() -> str:
    # payment_id 全局唯一，按所有租户的 bt_N 取最大值
    highest = 0
    for payment_id in Order.objects.filter(payment_id__startswith="bt_").values_list("payment_id", flat=True):
        match = _PAYMENT_ID_RE.match(payment_id)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"bt_{highest + 1}"


def confirm_order(tenant_id, order_id) -> str:
    """
    把订单标为 confirmed 并分配 bt_N。已经是 confirmed 的订单直接返回原 payment_id。

    Raises:
        NotFoundError: 订单不存在
    """
    with transaction.atomic():
        order = _orders.filter(tenant_id, id=order_id).select_for_update().first()
        if order is None:
            raise NotFoundError("注文が見つかりません", code="ORDER_NOT_FOUND", detail={"order_id": order_id})
        if order.status == "confirmed":
            return order.payment_id

        order.payment_id = next_payment_id()
        order.status = "confirmed"
        order.save(update_fields=["payment_id", "status", "updated_at"])

    logger.info("[reconcile] order=%s → %s (confirmed)", order_id, order.payment_id)
    return order.payment_id


def load_pending_orders(tenant_id) -> list[Order]:
    return list(
        _orders.filter(tenant_id, status="pending_confirmation", payment_method="bank_transfer")
        .order_by("created_at", "id")
    )


def reconcile(tenant_id, csv_text: str, preview: bool = False) -> dict:
    """
    解析 → 匹配 →（非 preview 时）逐条写回。

    某一条写回失败只把该行标成 updateSuccess=False，不影响其他行。

    Raises:
        ValidationError: CSV 为空或没有入金行
    """
    deposits = parse_bank_csv(csv_text)
    orders = load_pending_orders(tenant_id)
    outcome = match_deposits(deposits, orders)
    logger.info(
        "[reconcile] tenant=%s deposits=%d pending=%d matched=%d preview=%s",
        tenant_id, len(deposits), len(orders), len(outcome.matched), preview,
    )

    updates = []
    for pair in outcome.matched:
        if preview:
            updates.append((False, None))
            continue
        try:
            updates.append((True, confirm_order(tenant_id, pair.order.pk)))
        except (DatabaseError, BaseAppException) as exc:
            logger.error("[reconcile] order=%s 更新失败: %s", pair.order.pk, exc)
            updates.append((False, None))

    return serialize_reconcile_result(outcome, updates, total=len(deposits))
