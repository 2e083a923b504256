import uuid
from django.db import models


class Patient(models.Model):
    """最小化的患者记录；完整的患者 / 监护人 CRUD 属于外部系统。"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    full_name = models.CharField(max_length=200)
    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patients'


class Protocol(models.Model):

    class Category(models.TextChoices):
        MEDICATION = 'MEDICATION', 'Medication'
        MONITORING = 'MONITORING', 'Monitoring'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200, unique=True)
    category = models.CharField(max_length=20, choices=Category.choices, default=Category.MEDICATION)
    frequency_days = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'protocols'
        constraints = [
            models.CheckConstraint(condition=models.Q(frequency_days__gte=1), name='protocol_frequency_positive'),
        ]


class Milestone(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    protocol = models.ForeignKey(Protocol, on_delete=models.CASCADE, related_name='milestones')
    day_offset = models.IntegerField()
    message = models.TextField()

    class Meta:
        db_table = 'protocol_milestones'
        ordering = ['day_offset']


class Treatment(models.Model):

    class Status(models.TextChoices):
        ONGOING = 'ONGOING', 'Ongoing'
        FINISHED = 'FINISHED', 'Finished'
        REFUSED = 'REFUSED', 'Refused'
        EXTERNAL = 'EXTERNAL', 'External'
        SUSPENDED = 'SUSPENDED', 'Suspended'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(Patient, on_delete=models.CASCADE, related_name='treatments')
    protocol = models.ForeignKey(Protocol, on_delete=models.PROTECT, related_name='treatments')
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ONGOING)
    start_date = models.DateField()
    planned_doses_before_consult = models.PositiveIntegerField(default=0)
    next_consultation_date = models.DateField(blank=True, null=True)
    observations = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'treatments'


class InventoryLot(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    medication_name = models.CharField(max_length=200)
    lot_number = models.CharField(max_length=100)
    quantity = models.IntegerField(default=0)
    expiry_date = models.DateField()
    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'inventory_lots'
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gte=0), name='inventory_quantity_non_negative'),
        ]


class Dose(models.Model):

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        APPLIED = 'APPLIED', 'Applied'
        APPLIED_LATE = 'APPLIED_LATE', 'Applied late'
        NOT_ACCEPTED = 'NOT_ACCEPTED', 'Not accepted'

    class PaymentStatus(models.TextChoices):
        WAITING_PIX = 'WAITING_PIX', 'Waiting PIX'
        WAITING_CARD = 'WAITING_CARD', 'Waiting card'
        WAITING_BOLETO = 'WAITING_BOLETO', 'Waiting boleto'
        WAITING_DELIVERY = 'WAITING_DELIVERY', 'Waiting delivery'
        PAID = 'PAID', 'Paid'

    class SurveyStatus(models.TextChoices):
        NOT_SENT = 'NOT_SENT', 'Not sent'
        WAITING = 'WAITING', 'Waiting'
        SENT = 'SENT', 'Sent'
        ANSWERED = 'ANSWERED', 'Answered'

    APPLIED_STATUSES = (Status.APPLIED, Status.APPLIED_LATE)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    treatment = models.ForeignKey(Treatment, on_delete=models.CASCADE, related_name='doses')
    cycle_number = models.PositiveIntegerField()
    scheduled_date = models.DateField()
    application_date = models.DateField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    payment_status = models.CharField(
        max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.WAITING_PIX,
    )
    payment_updated_at = models.DateTimeField(blank=True, null=True)
    inventory_lot = models.ForeignKey(
        InventoryLot, on_delete=models.SET_NULL, blank=True, null=True, related_name='doses',
    )
    calculated_next_date = models.DateField(blank=True, null=True)
    days_until_next = models.IntegerField(blank=True, null=True)

    # 问卷 / 护理字段：与排程逻辑正交
    nurse = models.BooleanField(default=False)
    survey_status = models.CharField(
        max_length=20, choices=SurveyStatus.choices, default=SurveyStatus.NOT_SENT,
    )
    survey_score = models.PositiveSmallIntegerField(blank=True, null=True)
    survey_comment = models.TextField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'doses'
        ordering = ['cycle_number']
        constraints = [
            models.UniqueConstraint(fields=['treatment', 'cycle_number'], name='dose_unique_cycle_per_treatment'),
        ]

    @property
    def is_applied(self):
        return self.status in self.APPLIED_STATUSES


class DispenseLog(models.Model):
    """出库记录，只追加不修改。dose 唯一 → 同一剂次最多出库一次。"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    patient = models.ForeignKey(Patient, on_delete=models.PROTECT, related_name='dispense_logs')
    inventory_lot = models.ForeignKey(InventoryLot, on_delete=models.PROTECT, related_name='dispense_logs')
    dose = models.OneToOneField(
        Dose, on_delete=models.SET_NULL, blank=True, null=True, related_name='dispense_log',
    )
    medication_name = models.CharField(max_length=200)
    quantity = models.PositiveIntegerField(default=1)
    date = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'dispense_logs'


class DismissedLog(models.Model):

    class FeedbackStatus(models.TextChoices):
        PENDING = 'pending', 'Pending'
        RESOLVED = 'resolved', 'Resolved'

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    contact_id = models.CharField(max_length=100, unique=True)
    dismissed_at = models.DateTimeField(auto_now_add=True)
    feedback_text = models.TextField(blank=True, null=True)
    feedback_classification = models.CharField(max_length=50, blank=True, null=True)
    feedback_needs_medical = models.BooleanField(blank=True, null=True)
    feedback_urgency = models.CharField(max_length=20, blank=True, null=True)
    feedback_status = models.CharField(
        max_length=20, choices=FeedbackStatus.choices, blank=True, null=True,
    )

    class Meta:
        db_table = 'dismissed_logs'


class SystemSetting(models.Model):
    key = models.CharField(max_length=100, unique=True)
    value = models.CharField(max_length=255)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'system_settings'
