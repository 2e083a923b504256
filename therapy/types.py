"""
纯计算组件使用的标准数据结构。

adherence / scheduling / contacts 里的纯函数只消费这些 dataclass，
不直接碰 ORM；由 service 层负责把 model 转成 snapshot。
"""

from dataclasses import dataclass
from datetime import date
from typing import Any


@dataclass(frozen=True)
class NextSchedule:
    next_date: date
    days_until_next: int


@dataclass(frozen=True)
class DoseSnapshot:
    cycle_number: int
    status: str
    scheduled_date: date
    application_date: date

    @property
    def delay_days(self) -> int:
        """application_date − scheduled_date，单位天；负数表示提前。"""
        return (self.application_date - self.scheduled_date).days


@dataclass(frozen=True)
class TreatmentSnapshot:
    treatment_id: Any
    status: str
    start_date: date
    frequency_days: int
    planned_doses_before_consult: int = 0
    doses: tuple[DoseSnapshot, ...] = ()


@dataclass(frozen=True)
class TreatmentAdherence:
    """单个疗程的依从性计数，患者层面再汇总。"""

    late_count: int = 0
    very_late_count: int = 0
    abandoned: bool = False


@dataclass
class Contact:
    """里程碑随访联系。contact_id 同时作为忽略（dismiss）记录的键。"""

    contact_id: str
    treatment_id: Any
    patient_id: Any
    contact_date: date
    message: str
    protocol_name: str
    patient_name: str = ""
