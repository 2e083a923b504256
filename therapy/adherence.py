"""
患者依从性分级（纯函数）。

输入：患者所有疗程的 snapshot + 阈值参数对象 + 今天
输出：BOA / PARCIAL / RUIM / ABANDONO，没有进行中疗程时为 None

阈值（都可以在 system_settings 里按 adherence_ 前缀配置）：
    X max_delay_good    延迟超过 X 天的 APPLIED_LATE 计入 late_count
    Y max_late_doses    late 剂次超过 Y 次升级为 RUIM
    Z severe_delay      延迟超过 Z 天的 APPLIED_LATE 计入 very_late_count
    W abandonment_days  计划周期逾期超过 W 天视为放弃

分级优先级：ABANDONO > RUIM > PARCIAL > BOA。
本模块不读数据库也不读 settings，阈值由调用方显式传入。
"""

from dataclasses import dataclass, fields
from datetime import date
from enum import Enum
from typing import Iterable, Mapping

from .exceptions import ValidationError
from .scheduling import cycle_date
from .types import TreatmentAdherence, TreatmentSnapshot

SETTINGS_PREFIX = 'adherence_'

APPLIED = 'APPLIED'
APPLIED_LATE = 'APPLIED_LATE'
PENDING = 'PENDING'
ONGOING = 'ONGOING'


class AdherenceTier(str, Enum):
    BOA = 'BOA'
    PARCIAL = 'PARCIAL'
    RUIM = 'RUIM'
    ABANDONO = 'ABANDONO'


@dataclass(frozen=True)
class AdherenceSettings:
    max_delay_good: int = 3
    max_late_doses: int = 3
    severe_delay: int = 5
    abandonment_days: int = 30

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, object]) -> "AdherenceSettings":
        """
        从 {'adherence_max_delay_good': '3', ...} 构造。
        缺失或空值用默认值；非数字或负数抛 ValidationError。
        """
        values = {}
        errors = []
        for f in fields(cls):
            raw = mapping.get(SETTINGS_PREFIX + f.name)
            if raw is None or str(raw).strip() == '':
                continue
            # "5" / "5.0" 接受；"3.7"、"inf"、"nan" 拒绝
            try:
                value = float(str(raw).strip())
                if not value.is_integer():
                    errors.append({'field': SETTINGS_PREFIX + f.name, 'message': f'Not a whole number: {raw!r}.'})
                    continue
                number = int(value)
            except (ValueError, OverflowError):
                errors.append({'field': SETTINGS_PREFIX + f.name, 'message': f'Not a number: {raw!r}.'})
                continue
            if number < 0:
                errors.append({'field': SETTINGS_PREFIX + f.name, 'message': 'Must be >= 0.'})
                continue
            values[f.name] = number

        if errors:
            raise ValidationError(
                message='Invalid adherence settings.',
                code='INVALID_ADHERENCE_SETTINGS',
                detail={'errors': errors},
            )
        return cls(**values)

    def as_mapping(self) -> dict[str, int]:
        return {SETTINGS_PREFIX + f.name: getattr(self, f.name) for f in fields(self)}


def _is_abandoned(treatment: TreatmentSnapshot, settings: AdherenceSettings, today: date) -> bool:
    """
    从最后一个计划周期往前找，跳过已注射的周期，
    第一个「没有剂次记录」或「仍是 PENDING」的周期就是要检查的那个。
    """
    by_cycle = {dose.cycle_number: dose for dose in treatment.doses}

    for cycle in range(treatment.planned_doses_before_consult, 0, -1):
        dose = by_cycle.get(cycle)
        if dose is not None and dose.status in (APPLIED, APPLIED_LATE):
            continue
        if dose is None or dose.status == PENDING:
            due = cycle_date(treatment.start_date, treatment.frequency_days, cycle)
            return (today - due).days > settings.abandonment_days

    return False


def classify_treatment(treatment: TreatmentSnapshot, settings: AdherenceSettings, today: date) -> TreatmentAdherence:
    late_count = 0
    very_late_count = 0
    for dose in treatment.doses:
        if dose.status != APPLIED_LATE:
            continue
        delay = dose.delay_days
        if delay > settings.max_delay_good:
            late_count += 1
        if delay > settings.severe_delay:
            very_late_count += 1

    return TreatmentAdherence(
        late_count=late_count,
        very_late_count=very_late_count,
        abandoned=_is_abandoned(treatment, settings, today),
    )


def classify_patient(
    treatments: Iterable[TreatmentSnapshot],
    settings: AdherenceSettings,
    today: date,
) -> AdherenceTier | None:
    ongoing = [t for t in treatments if t.status == ONGOING]
    if not ongoing:
        return None

    abandoned = False
    late_count = 0
    very_late_count = 0
    for treatment in ongoing:
        result = classify_treatment(treatment, settings, today)
        abandoned = abandoned or result.abandoned
        late_count += result.late_count
        very_late_count += result.very_late_count

    if abandoned:
        return AdherenceTier.ABANDONO
    if very_late_count > settings.max_late_doses:
        return AdherenceTier.RUIM
    if 2 <= late_count <= settings.max_late_doses:
        return AdherenceTier.PARCIAL
    return AdherenceTier.BOA
