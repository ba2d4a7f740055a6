"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / not_found / block / transport_error / unauthorized）
- code:        业务错误码（INVALID_SEND_HOUR / SCENARIO_NOT_FOUND / ...）
- message:     人类可读的描述（面向诊所管理员，日文）
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

View 层只需 raise，exception_handler 统一捕获并格式化为 {ok: false, error: ...}。

注意：批处理（提醒发送、银行照合写回、EHR 同步）里的单条失败不走异常，
而是计入结果统计，整体仍返回 ok: true。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """输入校验失败（CSV 格式、规则字段、flow graph 结构），400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class NotFoundError(BaseAppException):
    """请求的资源不存在（场景、患者），404。"""

    type = 'not_found'
    code = 'NOT_FOUND'
    http_status = 404


class BlockError(BaseAppException):
    """业务规则阻止操作（例如重复报名），409。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class EhrTransportError(BaseAppException):
    """
    外部电子病历（ORCA / FHIR）写入失败。

    只在写操作（pushPatient / pushKarte）抛出；读操作失败时 adapter
    返回 None / []，让批量同步可以继续。
    """

    type = 'transport_error'
    code = 'EHR_TRANSPORT_ERROR'
    http_status = 502


class UnauthorizedError(BaseAppException):
    """cron 入口的 CRON_SECRET 不匹配，401。"""

    type = 'unauthorized'
    code = 'UNAUTHORIZED'
    http_status = 401
