"""
Unit tests for the dose lifecycle (create_dose / update_dose / delete_dose / update_survey)。

覆盖：
1. 周期号：自动递增、重复 → DUPLICATE_CYCLE、乱序 → CYCLE_OUT_OF_ORDER
2. 未来日期不能标记为已注射
3. APPLIED / APPLIED_LATE 由 scheduled_date 比较决定
4. 进入已注射状态时出库恰好一次；已注射剂次再编辑不重复出库
5. 出库失败 → 整个变更回滚，剂次状态不变
6. 状态机拒绝非法转换
7. 每次变更后疗程 start_date 同步
"""
import pytest
from datetime import date

from therapy.doses import create_dose, delete_dose, get_dose, update_dose, update_survey
from therapy.exceptions import ConflictError, InsufficientInventoryError, NotFoundError, ValidationError
from therapy.models import DispenseLog, Dose
from tests.conftest import DoseFactory, InventoryLotFactory, ProtocolFactory, TreatmentFactory

TODAY = date(2024, 3, 1)


@pytest.mark.django_db
class TestCreateDose:

    def test_defaults_pending_and_computes_next(self):
        treatment = TreatmentFactory(protocol=ProtocolFactory(frequency_days=28))

        dose = create_dose(treatment.id, {'application_date': '2024-01-01'}, today=date(2024, 1, 1))

        assert dose.status == Dose.Status.PENDING
        assert dose.cycle_number == 1
        assert dose.scheduled_date == date(2024, 1, 1)
        assert dose.calculated_next_date == date(2024, 1, 29)
        assert dose.days_until_next == 28

    def test_cycle_numbers_auto_increment(self):
        treatment = TreatmentFactory()
        first = create_dose(treatment.id, {'application_date': '2024-01-01'}, today=TODAY)
        second = create_dose(treatment.id, {'application_date': '2024-01-29'}, today=TODAY)
        third = create_dose(treatment.id, {'application_date': '2024-02-26'}, today=TODAY)

        assert [first.cycle_number, second.cycle_number, third.cycle_number] == [1, 2, 3]

    def test_duplicate_cycle_rejected(self):
        treatment = TreatmentFactory()
        DoseFactory(treatment=treatment, cycle_number=1)

        with pytest.raises(ConflictError) as exc_info:
            create_dose(treatment.id, {'application_date': '2024-01-29', 'cycle_number': 1}, today=TODAY)

        assert exc_info.value.code == 'DUPLICATE_CYCLE'

    def test_out_of_order_cycle_rejected(self):
        treatment = TreatmentFactory()
        DoseFactory(treatment=treatment, cycle_number=3)

        with pytest.raises(ConflictError) as exc_info:
            create_dose(treatment.id, {'application_date': '2024-01-29', 'cycle_number': 2}, today=TODAY)

        assert exc_info.value.code == 'CYCLE_OUT_OF_ORDER'

    def test_future_applied_rejected(self):
        treatment = TreatmentFactory()

        with pytest.raises(ValidationError) as exc_info:
            create_dose(treatment.id, {'application_date': '2024-03-02', 'status': 'APPLIED'}, today=TODAY)

        assert exc_info.value.code == 'FUTURE_APPLIED_DOSE'
        assert 'PENDING' in exc_info.value.message
        assert not Dose.objects.exists()

    def test_applied_today_is_allowed(self):
        treatment = TreatmentFactory()
        dose = create_dose(treatment.id, {'application_date': '2024-03-01', 'status': 'APPLIED'}, today=TODAY)
        assert dose.status == Dose.Status.APPLIED

    def test_late_application_is_classified(self):
        treatment = TreatmentFactory()
        dose = create_dose(treatment.id, {
            'scheduled_date': '2024-01-01',
            'application_date': '2024-01-10',
            'status': 'APPLIED',
        }, today=TODAY)

        assert dose.status == Dose.Status.APPLIED_LATE

    def test_early_application_is_applied(self):
        treatment = TreatmentFactory()
        dose = create_dose(treatment.id, {
            'scheduled_date': '2024-01-10',
            'application_date': '2024-01-08',
            'status': 'APPLIED_LATE',
        }, today=TODAY)

        assert dose.status == Dose.Status.APPLIED

    def test_applied_with_lot_dispenses(self):
        treatment = TreatmentFactory()
        lot = InventoryLotFactory(quantity=2)

        dose = create_dose(treatment.id, {
            'application_date': '2024-02-01',
            'status': 'APPLIED',
            'inventory_lot_id': str(lot.id),
        }, today=TODAY)

        lot.refresh_from_db()
        assert lot.quantity == 1
        assert DispenseLog.objects.get(dose=dose).patient_id == treatment.patient_id

    def test_pending_with_lot_does_not_dispense(self):
        treatment = TreatmentFactory()
        lot = InventoryLotFactory(quantity=2)

        create_dose(treatment.id, {'application_date': '2024-04-01', 'inventory_lot_id': str(lot.id)}, today=TODAY)

        lot.refresh_from_db()
        assert lot.quantity == 2
        assert not DispenseLog.objects.exists()

    def test_empty_lot_aborts_creation(self):
        treatment = TreatmentFactory()
        lot = InventoryLotFactory(quantity=0)

        with pytest.raises(InsufficientInventoryError):
            create_dose(treatment.id, {
                'application_date': '2024-02-01',
                'status': 'APPLIED',
                'inventory_lot_id': str(lot.id),
            }, today=TODAY)

        assert not Dose.objects.filter(treatment=treatment).exists()

    def test_unknown_status_rejected(self):
        treatment = TreatmentFactory()
        with pytest.raises(ValidationError):
            create_dose(treatment.id, {'application_date': '2024-02-01', 'status': 'DONE'}, today=TODAY)

    def test_unknown_treatment(self):
        import uuid
        with pytest.raises(NotFoundError) as exc_info:
            create_dose(uuid.uuid4(), {'application_date': '2024-02-01'}, today=TODAY)
        assert exc_info.value.code == 'TREATMENT_NOT_FOUND'

    def test_create_resyncs_start_date(self):
        treatment = TreatmentFactory(start_date=date(2023, 12, 1))

        create_dose(treatment.id, {'application_date': '2024-01-05'}, today=TODAY)

        treatment.refresh_from_db()
        assert treatment.start_date == date(2024, 1, 5)


@pytest.mark.django_db
class TestUpdateDose:

    def test_future_applied_rejected_and_unchanged(self):
        dose = DoseFactory(scheduled_date=date(2024, 3, 10))

        with pytest.raises(ValidationError) as exc_info:
            update_dose(dose.id, {'status': 'APPLIED'}, today=TODAY)

        assert exc_info.value.code == 'FUTURE_APPLIED_DOSE'
        dose.refresh_from_db()
        assert dose.status == Dose.Status.PENDING

    def test_moving_applied_dose_into_future_rejected(self):
        dose = DoseFactory(status=Dose.Status.APPLIED)

        with pytest.raises(ValidationError):
            update_dose(dose.id, {'application_date': '2024-04-01'}, today=TODAY)

    def test_transition_dispenses_once_with_stored_lot(self):
        lot = InventoryLotFactory(quantity=3)
        dose = DoseFactory(inventory_lot=lot)

        update_dose(dose.id, {'status': 'APPLIED'}, today=TODAY)
        update_dose(dose.id, {'survey_comment': 'ok'}, today=TODAY)
        update_dose(dose.id, {'application_date': '2024-01-02'}, today=TODAY)

        lot.refresh_from_db()
        assert lot.quantity == 2
        assert DispenseLog.objects.filter(dose=dose).count() == 1

    def test_transition_dispenses_with_new_lot(self):
        lot = InventoryLotFactory(quantity=3)
        dose = DoseFactory()

        update_dose(dose.id, {'status': 'APPLIED', 'inventory_lot_id': str(lot.id)}, today=TODAY)

        lot.refresh_from_db()
        assert lot.quantity == 2

    def test_applied_without_lot_does_not_dispense(self):
        dose = DoseFactory()
        update_dose(dose.id, {'status': 'APPLIED'}, today=TODAY)
        assert not DispenseLog.objects.exists()

    def test_failed_dispense_leaves_status_unchanged(self):
        lot = InventoryLotFactory(quantity=0)
        dose = DoseFactory(inventory_lot=lot)
        treatment = dose.treatment
        start_before = treatment.start_date

        with pytest.raises(InsufficientInventoryError):
            update_dose(dose.id, {'status': 'APPLIED', 'application_date': '2024-01-05'}, today=TODAY)

        dose.refresh_from_db()
        treatment.refresh_from_db()
        assert dose.status == Dose.Status.PENDING
        assert dose.application_date == date(2024, 1, 1)
        assert treatment.start_date == start_before

    def test_late_application_classified_against_frozen_schedule(self):
        dose = DoseFactory(scheduled_date=date(2024, 1, 1))

        updated = update_dose(dose.id, {'status': 'APPLIED', 'application_date': '2024-01-10'}, today=TODAY)

        assert updated.status == Dose.Status.APPLIED_LATE
        assert updated.scheduled_date == date(2024, 1, 1)

    def test_editing_date_of_applied_dose_reclassifies(self):
        dose = DoseFactory(scheduled_date=date(2024, 1, 1), status=Dose.Status.APPLIED_LATE,
                           application_date=date(2024, 1, 10))

        updated = update_dose(dose.id, {'application_date': '2024-01-01'}, today=TODAY)

        assert updated.status == Dose.Status.APPLIED

    def test_application_date_change_recomputes_next(self):
        dose = DoseFactory()

        updated = update_dose(dose.id, {'application_date': '2024-02-01'}, today=TODAY)

        assert updated.calculated_next_date == date(2024, 2, 29)
        assert updated.days_until_next == -1

    def test_not_accepted_is_terminal(self):
        dose = DoseFactory(status=Dose.Status.NOT_ACCEPTED)

        with pytest.raises(ValidationError) as exc_info:
            update_dose(dose.id, {'status': 'APPLIED'}, today=TODAY)

        assert exc_info.value.code == 'INVALID_TRANSITION'

    def test_not_accepted_never_dispenses(self):
        lot = InventoryLotFactory(quantity=3)
        dose = DoseFactory(inventory_lot=lot)

        updated = update_dose(dose.id, {'status': 'NOT_ACCEPTED'}, today=TODAY)

        assert updated.status == Dose.Status.NOT_ACCEPTED
        lot.refresh_from_db()
        assert lot.quantity == 3

    def test_applied_cannot_go_back_to_pending(self):
        dose = DoseFactory(status=Dose.Status.APPLIED)

        with pytest.raises(ValidationError) as exc_info:
            update_dose(dose.id, {'status': 'PENDING'}, today=TODAY)

        assert exc_info.value.code == 'INVALID_TRANSITION'

    def test_scheduled_date_frozen_after_application(self):
        dose = DoseFactory(status=Dose.Status.APPLIED)

        with pytest.raises(ValidationError) as exc_info:
            update_dose(dose.id, {'scheduled_date': '2024-01-05'}, today=TODAY)

        assert exc_info.value.code == 'SCHEDULED_DATE_FROZEN'

    def test_cycle_number_immutable(self):
        dose = DoseFactory()
        with pytest.raises(ValidationError):
            update_dose(dose.id, {'cycle_number': 5}, today=TODAY)

    def test_applying_moves_treatment_start_date(self):
        treatment = TreatmentFactory(start_date=date(2024, 1, 1))
        dose = DoseFactory(treatment=treatment, scheduled_date=date(2024, 1, 1))

        update_dose(dose.id, {'status': 'APPLIED', 'application_date': '2024-01-04'}, today=TODAY)

        treatment.refresh_from_db()
        assert treatment.start_date == date(2024, 1, 4)

    def test_payment_status_stamps_timestamp(self):
        dose = DoseFactory()

        updated = update_dose(dose.id, {'payment_status': 'PAID'}, today=TODAY)

        assert updated.payment_status == Dose.PaymentStatus.PAID
        assert updated.payment_updated_at is not None

    def test_turning_nurse_off_resets_survey(self):
        dose = DoseFactory(nurse=True, survey_status=Dose.SurveyStatus.ANSWERED, survey_score=9)

        updated = update_dose(dose.id, {'nurse': False}, today=TODAY)

        assert updated.survey_status == Dose.SurveyStatus.NOT_SENT
        assert updated.survey_score is None

    def test_unknown_dose(self):
        import uuid
        with pytest.raises(NotFoundError) as exc_info:
            update_dose(uuid.uuid4(), {'status': 'APPLIED'}, today=TODAY)
        assert exc_info.value.code == 'DOSE_NOT_FOUND'


@pytest.mark.django_db
class TestDeleteDose:

    def test_delete_resyncs_to_remaining_applied(self):
        treatment = TreatmentFactory(start_date=date(2024, 1, 29))
        DoseFactory(treatment=treatment, cycle_number=1, status=Dose.Status.APPLIED,
                    scheduled_date=date(2024, 1, 1))
        second = DoseFactory(treatment=treatment, cycle_number=2, status=Dose.Status.APPLIED,
                             scheduled_date=date(2024, 1, 29))

        delete_dose(second.id)

        treatment.refresh_from_db()
        assert treatment.start_date == date(2024, 1, 1)
        with pytest.raises(NotFoundError):
            get_dose(second.id)

    def test_delete_unknown(self):
        import uuid
        with pytest.raises(NotFoundError):
            delete_dose(uuid.uuid4())


@pytest.mark.django_db
class TestUpdateSurvey:

    def test_only_survey_fields_change(self):
        dose = DoseFactory(nurse=True)

        updated = update_survey(dose.id, {'survey_status': 'ANSWERED', 'survey_score': 10, 'status': 'APPLIED'})

        assert updated.survey_status == Dose.SurveyStatus.ANSWERED
        assert updated.survey_score == 10
        dose.refresh_from_db()
        assert dose.status == Dose.Status.PENDING
