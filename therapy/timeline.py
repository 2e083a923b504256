"""
疗程时间线同步。

Treatment.start_date 是剂次链和随访里程碑（D0, D7, D30 ...）共用的参考日期：
  - 有已注射剂次 → 最近一次注射的 application_date
  - 否则          → 最早一个 PENDING 剂次的 application_date
  - 都没有        → 保持不变

两种同步：
1. resync_start_date      被动：任何剂次变更之后调用
2. rechain_pending_doses  主动：调用方显式修改 start_date 时，重排后续 PENDING 剂次
"""

import logging
from datetime import timedelta

from django.db import transaction

from .exceptions import NotFoundError
from .models import Dose, Patient, Treatment
from .scheduling import next_schedule

logger = logging.getLogger(__name__)


def get_treatment(treatment_id, for_update=False):
    queryset = Treatment.objects.select_related('protocol', 'patient')
    if for_update:
        queryset = queryset.select_for_update(of=('self',))
    try:
        return queryset.get(id=treatment_id)
    except Treatment.DoesNotExist:
        raise NotFoundError(
            message='Treatment not found',
            code='TREATMENT_NOT_FOUND',
            detail={'treatment_id': str(treatment_id)},
        )


def resync_start_date(treatment):
    """
    被动同步 start_date。返回同步后的日期（可能没变）。
    """
    latest_applied = (
        Dose.objects.filter(treatment=treatment, status__in=Dose.APPLIED_STATUSES)
        .order_by('-application_date', '-cycle_number')
        .values_list('application_date', flat=True)
        .first()
    )
    if latest_applied is not None:
        reference = latest_applied
    else:
        reference = (
            Dose.objects.filter(treatment=treatment, status=Dose.Status.PENDING)
            .order_by('application_date', 'cycle_number')
            .values_list('application_date', flat=True)
            .first()
        )

    if reference is not None and reference != treatment.start_date:
        logger.info("treatment %s start_date %s -> %s", treatment.id, treatment.start_date, reference)
        treatment.start_date = reference
        treatment.save(update_fields=['start_date', 'updated_at'])

    return treatment.start_date


def rechain_pending_doses(treatment, new_start_date, today=None):
    """
    从最后一个已注射剂次（或新的 start_date）开始，按协议频率重新排后续 PENDING 剂次。

    已注射的剂次永远不会被回溯修改；PENDING 剂次代表计划，
    scheduled_date 和 application_date 同步改成新日期。

    Returns:
        被改动的 Dose 列表。
    """
    frequency_days = treatment.protocol.frequency_days

    last_applied = (
        Dose.objects.filter(treatment=treatment, status__in=Dose.APPLIED_STATUSES)
        .order_by('-cycle_number')
        .first()
    )
    if last_applied is not None:
        previous_cycle = last_applied.cycle_number
        previous_date = last_applied.application_date
    else:
        previous_cycle = 0
        previous_date = new_start_date

    pending = Dose.objects.filter(
        treatment=treatment,
        status=Dose.Status.PENDING,
        cycle_number__gt=previous_cycle,
    ).order_by('cycle_number')

    changed = []
    for dose in pending:
        if dose.cycle_number == 1 and last_applied is None:
            new_date = new_start_date
        else:
            new_date = previous_date + timedelta(days=frequency_days)

        schedule = next_schedule(new_date, frequency_days, today=today)
        dose.scheduled_date = new_date
        dose.application_date = new_date
        dose.calculated_next_date = schedule.next_date
        dose.days_until_next = schedule.days_until_next
        dose.save(update_fields=[
            'scheduled_date', 'application_date', 'calculated_next_date', 'days_until_next', 'updated_at',
        ])
        changed.append(dose)
        previous_date = new_date

    logger.info(
        "treatment %s rechained %d pending doses from cycle %d",
        treatment.id, len(changed), previous_cycle + 1,
    )
    return changed


@transaction.atomic
def change_start_date(treatment_id, new_start_date, today=None):
    """
    显式修改疗程参考日期：写入 → 重排 PENDING 剂次 → 被动同步。

    被动同步放在最后，保证 start_date 始终满足「最近注射 / 最早待注射」的不变量；
    已有注射记录时，start_date 最终仍指向最近一次注射日期。
    """
    treatment = get_treatment(treatment_id, for_update=True)

    treatment.start_date = new_start_date
    treatment.save(update_fields=['start_date', 'updated_at'])

    rechain_pending_doses(treatment, new_start_date, today=today)
    resync_start_date(treatment)
    return treatment


@transaction.atomic
def update_treatment(treatment_id, changes, today=None):
    """
    修改疗程字段。changes 只包含调用方实际提交的字段（见 payloads.parse_treatment_update）。
    """
    treatment = get_treatment(treatment_id, for_update=True)

    update_fields = []
    for field in ('status', 'next_consultation_date', 'observations', 'planned_doses_before_consult'):
        if field in changes:
            setattr(treatment, field, changes[field])
            update_fields.append(field)

    if update_fields:
        treatment.save(update_fields=update_fields + ['updated_at'])

    if 'start_date' in changes:
        treatment = change_start_date(treatment.id, changes['start_date'], today=today)

    if 'status' in changes:
        refresh_patient_active(treatment.patient_id)

    return treatment


def refresh_patient_active(patient_id):
    """患者只要还有 ONGOING / EXTERNAL 疗程就视为在治。"""
    active = Treatment.objects.filter(
        patient_id=patient_id,
        status__in=(Treatment.Status.ONGOING, Treatment.Status.EXTERNAL),
    ).exists()
    Patient.objects.filter(id=patient_id).update(active=active)
    return active
