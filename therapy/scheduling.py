"""
剂次排程的纯日期计算。

next_date       = 参考日期 + frequency_days 个自然日
days_until_next = next_date 与今天相差的天数（都按本地零点对齐，所以是整数天）

无副作用，同样输入永远得到同样输出。
"""

from datetime import date, datetime, timedelta

from django.utils import timezone

from .exceptions import ValidationError
from .types import NextSchedule


def to_local_date(value: date | datetime) -> date:
    """datetime → 本地日期；date 原样返回。"""
    if isinstance(value, datetime):
        if timezone.is_aware(value):
            return timezone.localtime(value).date()
        return value.date()
    return value


def next_schedule(reference_date: date | datetime, frequency_days: int, today: date | None = None) -> NextSchedule:
    if frequency_days is None or int(frequency_days) < 1:
        raise ValidationError(
            message='Protocol frequency must be at least 1 day.',
            code='INVALID_FREQUENCY',
            detail={'frequency_days': frequency_days},
        )

    reference = to_local_date(reference_date)
    today = to_local_date(today) if today is not None else timezone.localdate()

    next_date = reference + timedelta(days=int(frequency_days))
    return NextSchedule(next_date=next_date, days_until_next=(next_date - today).days)


def cycle_date(start_date: date, frequency_days: int, cycle_number: int) -> date:
    """按计划推算第 N 个周期的日期，第 1 周期就是 start_date 当天。"""
    return start_date + timedelta(days=frequency_days * (cycle_number - 1))
