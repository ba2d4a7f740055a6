"""
Response serializers — 内部结构 / ORM 对象 → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
"""


def _iso(value):
    return value.isoformat() if value else None


def serialize_reconcile_result(outcome, updates, total):
    """
    银行照合结果。

    updates 与 outcome.matched 一一对应：(写回是否成功, 新 payment_id)。
    preview 时全部是 (False, None)，updated 为 0。
    """
    matched = [
        {
            'transfer': pair.deposit.to_dict(),
            'order': {
                'id': pair.order.id,
                'patient_id': pair.order.patient_id,
                'product_code': pair.order.product_code,
                'amount': pair.order.amount,
            },
            'newPaymentId': payment_id,
            'updateSuccess': success,
        }
        for pair, (success, payment_id) in zip(outcome.matched, updates)
    ]
    unmatched = [
        {**row.deposit.to_dict(), 'reason': row.reason}
        for row in outcome.unmatched
    ]
    return {
        'matched': matched,
        'unmatched': unmatched,
        'summary': {
            'total': total,
            'matched': len(matched),
            'unmatched': len(unmatched),
            'updated': sum(1 for success, _ in updates if success),
        },
    }


def serialize_reminder_rule(rule):
    return {
        'id': rule.id,
        'name': rule.name,
        'is_enabled': rule.is_enabled,
        'timing_type': rule.timing_type,
        'send_hour': rule.send_hour,
        'send_minute': rule.send_minute,
        'target_day_offset': rule.target_day_offset,
        'message_format': rule.message_format,
        'message_template': rule.message_template,
        'created_at': _iso(rule.created_at),
        'updated_at': _iso(rule.updated_at),
    }


def serialize_sync_results(results):
    """EHR 批量同步结果 + 按 status 汇总。"""
    summary = {'total': len(results), 'success': 0, 'error': 0, 'skipped': 0}
    for result in results:
        summary[result.status] = summary.get(result.status, 0) + 1
    return {
        'results': [result.to_dict() for result in results],
        'summary': summary,
    }


def serialize_sync_log(log):
    return {
        'id': log.id,
        'provider': log.provider,
        'direction': log.direction,
        'resource_type': log.resource_type,
        'patient_id': log.patient_id,
        'external_id': log.external_id,
        'status': log.status,
        'detail': log.detail,
        'created_at': _iso(log.created_at),
    }


def serialize_enrollment(enrollment):
    return {
        'id': enrollment.id,
        'scenario_id': enrollment.scenario_id,
        'patient_id': enrollment.patient_id,
        'current_step_order': enrollment.current_step_order,
        'status': enrollment.status,
        'next_send_at': _iso(enrollment.next_send_at),
    }
