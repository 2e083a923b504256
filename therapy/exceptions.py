"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / not_found / conflict）
- code:        业务错误码（FUTURE_APPLIED_DOSE / DUPLICATE_CYCLE / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

Service 层只需 raise，exception_handler 统一捕获并格式化响应。
引擎内部不做任何自动重试，异常原样抛给调用方。
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
    """输入验证失败：未来日期的已注射剂次、日期格式错误、频率非正数等。400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class NotFoundError(BaseAppException):
    """疗程 / 剂次 / 批次不存在。404。"""

    type = 'not_found'
    code = 'NOT_FOUND'
    http_status = 404


class ConflictError(BaseAppException):
    """与现有数据冲突，例如同一疗程内重复的 cycle_number。409。"""

    type = 'conflict'
    code = 'CONFLICT'
    http_status = 409


class InsufficientInventoryError(ConflictError):
    """
    出库时批次库存已耗尽。

    整个剂次变更随之回滚，不会留下「已注射但未出库」的中间状态。
    """

    code = 'INSUFFICIENT_INVENTORY'
