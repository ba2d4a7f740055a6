"""
统一异常处理器。

挂到 DRF 的 EXCEPTION_HANDLER setting 上。
所有响应前端都能用同一套逻辑判断：
  response.ok === false  → 出问题了，看 error / code
  response.ok === true   → 成功（批处理即使有单条失败也是 true）

统一错误响应格式：
{
    "ok":      false,
    "error":   "send_hour は 0〜23 で指定してください",
    "type":    "validation_error" | "not_found" | "block" | "transport_error",
    "code":    "VALIDATION_ERROR",
    "detail":  { ... }  // 可选
}
"""

from rest_framework.views import exception_handler as drf_default_handler
from rest_framework.exceptions import ValidationError as DRFValidationError
from django.http import JsonResponse

from .exceptions import BaseAppException


def error_body(exc):
    body = {
        'ok': False,
        'error': exc.message,
        'type': exc.type,
        'code': exc.code,
    }
    if exc.detail is not None:
        body['detail'] = exc.detail
    return body


def unified_exception_handler(exc, context):
    """
    DRF exception handler entry point.

    优先级：
    1. BaseAppException 及其子类 → 统一格式
    2. DRF 自带的 ValidationError（请求体解析失败等）→ 转成统一格式
    3. 其他异常 → 交给 DRF 默认处理，再补上 ok: false
    """

    # --- 1. 我们自己的异常体系 ---
    if isinstance(exc, BaseAppException):
        return JsonResponse(error_body(exc), status=exc.http_status)

    # --- 2. DRF 自带的 ValidationError ---
    if isinstance(exc, DRFValidationError):
        body = {
            'ok': False,
            'error': 'Request validation failed',
            'type': 'validation_error',
            'code': 'VALIDATION_ERROR',
            'detail': exc.detail,
        }
        return JsonResponse(body, status=400)

    # --- 3. 其他的交给 DRF 默认处理 ---
    response = drf_default_handler(exc, context)
    if response is not None and isinstance(response.data, dict):
        response.data.setdefault('ok', False)
        response.data.setdefault('error', response.data.get('detail', ''))
    return response
