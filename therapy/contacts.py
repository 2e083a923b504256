"""
随访里程碑联系。

每个 ONGOING 疗程 × 协议里的每个里程碑生成一个联系：
    contact_date = treatment.start_date + day_offset
    contact_id   = f"{treatment_id}_m_{day_offset}"   （稳定，同时作为忽略记录的键）

窗口 [今天 − 60 天, 今天 + N 天] 内且没被忽略的联系才返回，按日期升序。
忽略是永久的：同一个 contact_id 不会再出现。
"""

import logging
from datetime import date, timedelta
from typing import Iterable

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from .exceptions import ConflictError, NotFoundError, ValidationError
from .models import DismissedLog, Treatment
from .payloads import parse_feedback
from .types import Contact

logger = logging.getLogger(__name__)

CONTACT_ID_SEPARATOR = '_m_'


def make_contact_id(treatment_id, day_offset):
    return f"{treatment_id}{CONTACT_ID_SEPARATOR}{day_offset}"


def build_contacts(treatments: Iterable[Treatment], window_start: date, window_end: date):
    """纯计算部分：treatments 需要预取 protocol.milestones 和 patient。"""
    contacts = []
    for treatment in treatments:
        for milestone in treatment.protocol.milestones.all():
            contact_date = treatment.start_date + timedelta(days=milestone.day_offset)
            contact_id = make_contact_id(treatment.id, milestone.day_offset)

            if not (window_start <= contact_date <= window_end):
                continue

            contacts.append(Contact(
                contact_id=contact_id,
                treatment_id=treatment.id,
                patient_id=treatment.patient_id,
                patient_name=treatment.patient.full_name,
                contact_date=contact_date,
                message=milestone.message,
                protocol_name=treatment.protocol.name,
            ))

    contacts.sort(key=lambda c: c.contact_date)
    return contacts


def upcoming_contacts(days_ahead=7, today=None):
    if days_ahead < 0:
        raise ValidationError(
            message='days must be >= 0.',
            code='INVALID_DAYS',
            detail={'days': days_ahead},
        )

    today = today or timezone.localdate()
    lookback = getattr(settings, 'CONTACT_LOOKBACK_DAYS', 60)

    treatments = (
        Treatment.objects.filter(status=Treatment.Status.ONGOING)
        .select_related('patient', 'protocol')
        .prefetch_related('protocol__milestones')
    )
    candidates = build_contacts(
        treatments,
        window_start=today - timedelta(days=lookback),
        window_end=today + timedelta(days=days_ahead),
    )
    if not candidates:
        return []

    # 只查窗口内候选联系的忽略记录，不扫整张 dismissed_logs
    dismissed = set(
        DismissedLog.objects.filter(contact_id__in=[c.contact_id for c in candidates])
        .values_list('contact_id', flat=True)
    )
    return [c for c in candidates if c.contact_id not in dismissed]


def _check_contact_id(contact_id):
    if not isinstance(contact_id, str) or CONTACT_ID_SEPARATOR not in contact_id:
        raise ValidationError(
            message=f'Invalid contact id: {contact_id!r}.',
            code='INVALID_CONTACT_ID',
            detail={'expected_format': f'<treatment_id>{CONTACT_ID_SEPARATOR}<day_offset>'},
        )


def dismiss_contact(contact_id, feedback=None):
    """
    忽略一个联系。有反馈文本时 feedback_status 初始为 pending，否则为空。
    """
    _check_contact_id(contact_id)
    fields = parse_feedback(feedback)
    fields['feedback_status'] = DismissedLog.FeedbackStatus.PENDING if fields.get('feedback_text') else None

    try:
        with transaction.atomic():
            log = DismissedLog.objects.create(contact_id=contact_id, **fields)
    except IntegrityError:
        raise ConflictError(
            message='Contact already dismissed',
            code='CONTACT_ALREADY_DISMISSED',
            detail={'contact_id': contact_id},
        )

    logger.info("contact %s dismissed (feedback=%s)", contact_id, bool(fields.get('feedback_text')))
    return log


def _get_dismissed(contact_id):
    try:
        return DismissedLog.objects.get(contact_id=contact_id)
    except DismissedLog.DoesNotExist:
        raise NotFoundError(
            message='Dismissed contact not found',
            code='CONTACT_NOT_FOUND',
            detail={'contact_id': contact_id},
        )


def update_contact_feedback(contact_id, feedback):
    """补充 / 修改反馈；status 不传时回到 pending。"""
    log = _get_dismissed(contact_id)
    fields = parse_feedback(feedback)
    if fields.get('feedback_status') is None:
        fields['feedback_status'] = DismissedLog.FeedbackStatus.PENDING

    for field, value in fields.items():
        setattr(log, field, value)
    log.save(update_fields=list(fields))
    return log


def resolve_contact_feedback(contact_id):
    log = _get_dismissed(contact_id)
    log.feedback_status = DismissedLog.FeedbackStatus.RESOLVED
    log.save(update_fields=['feedback_status'])
    logger.info("contact %s feedback resolved", contact_id)
    return log


def list_dismissed_contacts():
    return DismissedLog.objects.order_by('-dismissed_at')
