"""
剂次生命周期。

状态机：
    PENDING ──→ APPLIED / APPLIED_LATE   （注射，有批次时出库一次）
            └─→ NOT_ACCEPTED             （患者拒绝，人工终止标记，不出库）

APPLIED 还是 APPLIED_LATE 不由调用方决定，而是比较 application_date 和冻结的
scheduled_date：延迟 <= 0 天为 APPLIED，> 0 天为 APPLIED_LATE。

每次变更都是一个有序的事务脚本：
    校验 → 写剂次 → 出库（仅进入已注射状态时）→ 同步疗程时间线
整段在同一个 transaction.atomic() 里，任何一步失败全部回滚，
所以出库失败时剂次状态保持不变。
"""

import logging

from django.db import transaction
from django.db.models import Max
from django.utils import timezone

from .exceptions import ConflictError, NotFoundError, ValidationError
from .inventory import dispense
from .models import Dose, InventoryLot
from .payloads import parse_dose_create, parse_dose_update, parse_survey_update
from .scheduling import next_schedule
from .timeline import get_treatment, resync_start_date

logger = logging.getLogger(__name__)

Status = Dose.Status

# from → 允许的 to。未列出的组合一律拒绝。
ALLOWED_TRANSITIONS = {
    Status.PENDING: frozenset({Status.PENDING, Status.APPLIED, Status.APPLIED_LATE, Status.NOT_ACCEPTED}),
    Status.APPLIED: frozenset({Status.APPLIED, Status.APPLIED_LATE}),
    Status.APPLIED_LATE: frozenset({Status.APPLIED, Status.APPLIED_LATE}),
    Status.NOT_ACCEPTED: frozenset({Status.NOT_ACCEPTED}),
}


def classify_applied(application_date, scheduled_date):
    delay = (application_date - scheduled_date).days
    return Status.APPLIED if delay <= 0 else Status.APPLIED_LATE


def check_transition(current, requested):
    if requested not in ALLOWED_TRANSITIONS[Status(current)]:
        raise ValidationError(
            message=f'Cannot change dose status from {current} to {requested}.',
            code='INVALID_TRANSITION',
            detail={'from': str(current), 'to': str(requested)},
        )


def check_not_future(application_date, today=None):
    """已注射状态的剂次，application_date 不能晚于今天。"""
    today = today or timezone.localdate()
    if application_date > today:
        raise ValidationError(
            message=(
                'A dose with a future application date cannot be marked as applied. '
                'Use PENDING for future scheduling.'
            ),
            code='FUTURE_APPLIED_DOSE',
            detail={'application_date': application_date.isoformat(), 'today': today.isoformat()},
        )


def get_dose(dose_id, for_update=False):
    queryset = Dose.objects.select_related('treatment__protocol', 'treatment__patient', 'inventory_lot')
    if for_update:
        queryset = queryset.select_for_update(of=('self',))
    try:
        return queryset.get(id=dose_id)
    except Dose.DoesNotExist:
        raise NotFoundError(
            message='Dose not found',
            code='DOSE_NOT_FOUND',
            detail={'dose_id': str(dose_id)},
        )


def _check_lot_exists(lot_id):
    if lot_id is not None and not InventoryLot.objects.filter(id=lot_id).exists():
        raise NotFoundError(
            message='Inventory lot not found',
            code='LOT_NOT_FOUND',
            detail={'inventory_lot_id': str(lot_id)},
        )


def _apply_schedule(dose, frequency_days, today):
    schedule = next_schedule(dose.application_date, frequency_days, today=today)
    dose.calculated_next_date = schedule.next_date
    dose.days_until_next = schedule.days_until_next


def _apply_side_fields(dose, changes):
    """付款 / 护理问卷字段，与排程无关。"""
    if 'payment_status' in changes:
        dose.payment_status = changes['payment_status']
        dose.payment_updated_at = timezone.now()

    if 'nurse' in changes:
        dose.nurse = changes['nurse']
        if not dose.nurse:
            dose.survey_status = Dose.SurveyStatus.NOT_SENT
            dose.survey_score = None
            dose.survey_comment = None

    # 只有护士随访的剂次才有问卷流程
    if 'survey_status' in changes and dose.nurse:
        dose.survey_status = changes['survey_status']
    if 'survey_score' in changes:
        dose.survey_score = changes['survey_score']
    if 'survey_comment' in changes:
        dose.survey_comment = changes['survey_comment']


@transaction.atomic
def create_dose(treatment_id, data, today=None):
    """
    新建剂次。

    cycle_number 不传时自动取当前最大值 + 1；传了则必须大于现有所有周期，
    保证同一疗程内的周期号唯一且按创建顺序严格递增。
    """
    changes = parse_dose_create(data)
    today = today or timezone.localdate()

    # 锁住疗程，串行化同一疗程下的周期号分配
    treatment = get_treatment(treatment_id, for_update=True)

    max_cycle = Dose.objects.filter(treatment=treatment).aggregate(m=Max('cycle_number'))['m'] or 0
    cycle_number = changes.get('cycle_number', max_cycle + 1)
    if Dose.objects.filter(treatment=treatment, cycle_number=cycle_number).exists():
        raise ConflictError(
            message=f'Cycle {cycle_number} already exists for this treatment.',
            code='DUPLICATE_CYCLE',
            detail={'treatment_id': str(treatment.id), 'cycle_number': cycle_number},
        )
    if cycle_number <= max_cycle:
        raise ConflictError(
            message=f'Cycle {cycle_number} is out of order; the next cycle is {max_cycle + 1}.',
            code='CYCLE_OUT_OF_ORDER',
            detail={'treatment_id': str(treatment.id), 'cycle_number': cycle_number, 'max_cycle': max_cycle},
        )

    application_date = changes['application_date']
    scheduled_date = changes.get('scheduled_date') or application_date
    lot_id = changes.get('inventory_lot_id')
    _check_lot_exists(lot_id)

    status = changes.get('status', Status.PENDING)
    check_transition(Status.PENDING, status)
    if status in Dose.APPLIED_STATUSES:
        check_not_future(application_date, today)
        status = classify_applied(application_date, scheduled_date)

    nurse = changes.get('nurse', False)
    dose = Dose(
        treatment=treatment,
        cycle_number=cycle_number,
        scheduled_date=scheduled_date,
        application_date=application_date,
        status=status,
        inventory_lot_id=lot_id,
        nurse=nurse,
        survey_status=Dose.SurveyStatus.WAITING if nurse else Dose.SurveyStatus.NOT_SENT,
    )
    _apply_side_fields(dose, {k: v for k, v in changes.items() if k != 'nurse'})
    _apply_schedule(dose, treatment.protocol.frequency_days, today)
    dose.save()

    logger.info(
        "dose created treatment=%s cycle=%d status=%s date=%s",
        treatment.id, cycle_number, dose.status, application_date,
    )

    if dose.is_applied and lot_id:
        dispense(lot_id, treatment.patient_id, dose.id)

    resync_start_date(treatment)
    return dose


@transaction.atomic
def update_dose(dose_id, data, today=None):
    """
    部分更新剂次；只改调用方提交的字段。

    从非已注射状态进入 APPLIED / APPLIED_LATE，且剂次关联了批次（本次提交或之前已存），
    触发一次出库。已经是已注射状态的剂次再编辑（改问卷、改日期）不会重复出库。
    """
    changes = parse_dose_update(data)
    today = today or timezone.localdate()

    dose = get_dose(dose_id, for_update=True)
    treatment = dose.treatment
    previous_status = Status(dose.status)

    if 'scheduled_date' in changes:
        if previous_status != Status.PENDING:
            raise ValidationError(
                message='The scheduled date of an applied or refused dose is frozen.',
                code='SCHEDULED_DATE_FROZEN',
                detail={'dose_id': str(dose.id), 'status': str(previous_status)},
            )
        dose.scheduled_date = changes['scheduled_date']

    date_changed = 'application_date' in changes and changes['application_date'] != dose.application_date
    if 'application_date' in changes:
        dose.application_date = changes['application_date']
        _apply_schedule(dose, treatment.protocol.frequency_days, today)

    requested = changes.get('status', previous_status)
    check_transition(previous_status, requested)

    if requested in Dose.APPLIED_STATUSES:
        if 'status' in changes or 'application_date' in changes:
            check_not_future(dose.application_date, today)
        requested = classify_applied(dose.application_date, dose.scheduled_date)
    dose.status = requested

    if 'inventory_lot_id' in changes:
        _check_lot_exists(changes['inventory_lot_id'])
        dose.inventory_lot_id = changes['inventory_lot_id']

    _apply_side_fields(dose, changes)
    dose.save()

    entering_applied = dose.is_applied and previous_status not in Dose.APPLIED_STATUSES
    if entering_applied and dose.inventory_lot_id:
        dispense(dose.inventory_lot_id, treatment.patient_id, dose.id)

    status_changed = dose.status != previous_status
    if status_changed or date_changed:
        logger.info(
            "dose %s updated status %s -> %s date=%s",
            dose.id, previous_status, dose.status, dose.application_date,
        )
        resync_start_date(treatment)

    return dose


@transaction.atomic
def delete_dose(dose_id):
    """删除剂次后重新同步时间线，后面的剂次不会因此被「提升」为参考日期以外的值。"""
    dose = get_dose(dose_id, for_update=True)
    treatment = dose.treatment

    dose.delete()
    logger.info("dose %s (cycle %d) deleted from treatment %s", dose_id, dose.cycle_number, treatment.id)

    resync_start_date(treatment)


def update_survey(dose_id, data):
    """只改问卷字段，不触碰状态和出库。"""
    changes = parse_survey_update(data)
    dose = get_dose(dose_id)

    if changes:
        _apply_side_fields(dose, changes)
        dose.save(update_fields=['survey_status', 'survey_score', 'survey_comment', 'updated_at'])
    return dose
