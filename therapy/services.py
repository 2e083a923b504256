"""
读取侧的 service 函数：疗程详情、带依从性分级的患者列表、依从性阈值读写。

依从性分级每次读取时实时计算，只附加在返回结果上，从不写回 Patient。
"""

import logging

from django.db import transaction
from django.db.models import Prefetch, Q
from django.utils import timezone

from .adherence import SETTINGS_PREFIX, AdherenceSettings, classify_patient
from .exceptions import ValidationError
from .models import Dose, Patient, SystemSetting, Treatment
from .timeline import get_treatment
from .types import DoseSnapshot, TreatmentSnapshot

logger = logging.getLogger(__name__)


# ── 依从性阈值 ──────────────────────────────────────────────────────────────

def load_adherence_settings():
    """从 system_settings 读 adherence_ 前缀的键，交给 AdherenceSettings 解析。"""
    rows = SystemSetting.objects.filter(key__startswith=SETTINGS_PREFIX).values_list('key', 'value')
    return AdherenceSettings.from_mapping(dict(rows))


@transaction.atomic
def update_adherence_settings(values):
    """
    批量 upsert 阈值。只接受 AdherenceSettings 认识的键，整体先校验再写入。
    """
    if not isinstance(values, dict) or not values:
        raise ValidationError(message='Settings object is required', code='SETTINGS_REQUIRED')

    known = set(AdherenceSettings().as_mapping())
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValidationError(
            message='Unknown adherence settings.',
            code='UNKNOWN_SETTING',
            detail={'unknown': unknown, 'known': sorted(known)},
        )

    current = {k: str(v) for k, v in load_adherence_settings().as_mapping().items()}
    current.update({k: str(v) for k, v in values.items()})
    parsed = AdherenceSettings.from_mapping(current)

    for key in values:
        SystemSetting.objects.update_or_create(key=key, defaults={'value': str(values[key])})

    logger.info("adherence settings updated: %s", sorted(values))
    return parsed


# ── ORM → snapshot ──────────────────────────────────────────────────────────

def to_snapshot(treatment):
    """treatment 需要预取 protocol 和 doses。"""
    return TreatmentSnapshot(
        treatment_id=treatment.id,
        status=treatment.status,
        start_date=treatment.start_date,
        frequency_days=treatment.protocol.frequency_days,
        planned_doses_before_consult=treatment.planned_doses_before_consult,
        doses=tuple(
            DoseSnapshot(
                cycle_number=dose.cycle_number,
                status=dose.status,
                scheduled_date=dose.scheduled_date,
                application_date=dose.application_date,
            )
            for dose in treatment.doses.all()
        ),
    )


# ── 患者 ────────────────────────────────────────────────────────────────────

def list_patients_with_adherence(search=None, active=None, today=None):
    """
    返回 [(patient, adherence_level_or_None), ...]。
    只预取 ONGOING 疗程；没有进行中疗程的患者分级为 None。
    """
    today = today or timezone.localdate()
    adherence_settings = load_adherence_settings()

    patients = Patient.objects.prefetch_related(
        Prefetch(
            'treatments',
            queryset=Treatment.objects.filter(status=Treatment.Status.ONGOING)
            .select_related('protocol')
            .prefetch_related(Prefetch('doses', queryset=Dose.objects.order_by('cycle_number'))),
            to_attr='ongoing_treatments',
        )
    ).order_by('full_name')

    if search:
        patients = patients.filter(Q(full_name__icontains=search))
    if active is not None:
        patients = patients.filter(active=active)

    results = []
    for patient in patients:
        snapshots = [to_snapshot(t) for t in patient.ongoing_treatments]
        tier = classify_patient(snapshots, adherence_settings, today)
        results.append((patient, tier.value if tier else None))
    return results


# ── 疗程 ────────────────────────────────────────────────────────────────────

def get_treatment_detail(treatment_id):
    treatment = get_treatment(treatment_id)
    doses = list(treatment.doses.select_related('inventory_lot').order_by('cycle_number'))
    milestones = list(treatment.protocol.milestones.all())
    return treatment, doses, milestones
