"""
库存出库（dispense）。

一次出库 = 批次库存 -1 + 写一条 DispenseLog，两步在同一个事务里，
要么都提交要么都回滚。

库存扣减用条件更新：
    UPDATE inventory_lots SET quantity = quantity - 1 WHERE id = ? AND quantity > 0
而不是「先读再写」，同一批次被并发出库时也不会丢失更新或扣成负数。
"""

import logging

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from .exceptions import ConflictError, InsufficientInventoryError, NotFoundError
from .models import DispenseLog, InventoryLot

logger = logging.getLogger(__name__)


def dispense(lot_id, patient_id, dose_id):
    """
    为一个剂次出库一支药。

    Returns:
        新建的 DispenseLog；该剂次已经出库过时返回 None（幂等，不会重复扣库存）。

    Raises:
        NotFoundError:              批次不存在
        InsufficientInventoryError: 批次库存 <= 0
        ConflictError:              并发下同一剂次被另一个事务抢先出库
    """
    if DispenseLog.objects.filter(dose_id=dose_id).exists():
        logger.warning("dose %s already dispensed, skipping", dose_id)
        return None

    try:
        with transaction.atomic():
            updated = InventoryLot.objects.filter(id=lot_id, quantity__gt=0).update(
                quantity=F('quantity') - 1,
                updated_at=timezone.now(),
            )
            if updated == 0:
                if not InventoryLot.objects.filter(id=lot_id).exists():
                    raise NotFoundError(
                        message='Inventory lot not found',
                        code='LOT_NOT_FOUND',
                        detail={'inventory_lot_id': str(lot_id)},
                    )
                logger.warning("dispense rejected: lot %s is empty (dose %s)", lot_id, dose_id)
                raise InsufficientInventoryError(
                    message='Insufficient inventory',
                    detail={'inventory_lot_id': str(lot_id), 'dose_id': str(dose_id)},
                )

            lot = InventoryLot.objects.only('medication_name').get(id=lot_id)
            log = DispenseLog.objects.create(
                patient_id=patient_id,
                inventory_lot_id=lot_id,
                dose_id=dose_id,
                medication_name=lot.medication_name,
                quantity=1,
            )
    except IntegrityError as exc:
        raise ConflictError(
            message='Dose was already dispensed',
            code='DOSE_ALREADY_DISPENSED',
            detail={'dose_id': str(dose_id)},
        ) from exc

    logger.info("dispensed lot=%s dose=%s patient=%s", lot_id, dose_id, patient_id)
    return log


def available_lots(today=None):
    """剂次表单可选的批次：启用、有库存、未过期，按过期日升序。"""
    today = today or timezone.localdate()
    return InventoryLot.objects.filter(
        active=True,
        quantity__gt=0,
        expiry_date__gt=today,
    ).order_by('expiry_date')


def list_dispense_logs(patient_id=None, medication_name=None, date_from=None, date_to=None):
    logs = DispenseLog.objects.select_related('patient', 'inventory_lot')

    if patient_id:
        logs = logs.filter(patient_id=patient_id)
    if medication_name:
        logs = logs.filter(medication_name__icontains=medication_name)
    if date_from:
        logs = logs.filter(date__date__gte=date_from)
    if date_to:
        logs = logs.filter(date__date__lte=date_to)

    return logs.order_by('-date')
