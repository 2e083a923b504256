"""
Response serializers: ORM 对象 / dataclass → JSON-able dict。

只负责「输出格式化」，不做任何解析或校验。
输入解析和校验在 therapy/payloads.py。
"""


def _date(value):
    return value.isoformat() if value else None


def _id(value):
    return str(value) if value is not None else None


def serialize_dose(dose):
    return {
        'id': str(dose.id),
        'treatment_id': str(dose.treatment_id),
        'cycle_number': dose.cycle_number,
        'status': dose.status,
        'scheduled_date': _date(dose.scheduled_date),
        'application_date': _date(dose.application_date),
        'calculated_next_date': _date(dose.calculated_next_date),
        'days_until_next': dose.days_until_next,
        'inventory_lot_id': _id(dose.inventory_lot_id),
        'payment_status': dose.payment_status,
        'payment_updated_at': _date(dose.payment_updated_at),
        'nurse': dose.nurse,
        'survey_status': dose.survey_status,
        'survey_score': dose.survey_score,
        'survey_comment': dose.survey_comment,
    }


def serialize_treatment(treatment):
    return {
        'id': str(treatment.id),
        'patient_id': str(treatment.patient_id),
        'protocol_id': str(treatment.protocol_id),
        'status': treatment.status,
        'start_date': _date(treatment.start_date),
        'planned_doses_before_consult': treatment.planned_doses_before_consult,
        'next_consultation_date': _date(treatment.next_consultation_date),
        'observations': treatment.observations,
    }


def serialize_treatment_detail(treatment, doses, milestones):
    body = serialize_treatment(treatment)
    body['protocol'] = {
        'id': str(treatment.protocol.id),
        'name': treatment.protocol.name,
        'frequency_days': treatment.protocol.frequency_days,
        'milestones': [
            {'day_offset': m.day_offset, 'message': m.message}
            for m in milestones
        ],
    }
    body['doses'] = [serialize_dose(d) for d in doses]
    return body


def serialize_patients(rows):
    """rows: [(patient, adherence_level), ...]。adherence_level 只在响应里出现，不落库。"""
    results = [
        {
            'id': str(patient.id),
            'full_name': patient.full_name,
            'active': patient.active,
            'adherence_level': adherence_level,
        }
        for patient, adherence_level in rows
    ]
    return {
        'count': len(results),
        'patients': results,
    }


def serialize_contact(contact):
    return {
        'contact_id': contact.contact_id,
        'treatment_id': str(contact.treatment_id),
        'patient_id': str(contact.patient_id),
        'patient_name': contact.patient_name,
        'contact_date': _date(contact.contact_date),
        'message': contact.message,
        'protocol_name': contact.protocol_name,
    }


def serialize_dismissed_log(log):
    return {
        'contact_id': log.contact_id,
        'dismissed_at': log.dismissed_at.isoformat(),
        'feedback': {
            'text': log.feedback_text,
            'classification': log.feedback_classification,
            'needs_medical_response': log.feedback_needs_medical,
            'urgency': log.feedback_urgency,
            'status': log.feedback_status,
        },
    }


def serialize_lot(lot):
    return {
        'id': str(lot.id),
        'medication_name': lot.medication_name,
        'lot_number': lot.lot_number,
        'quantity': lot.quantity,
        'expiry_date': _date(lot.expiry_date),
        'active': lot.active,
    }


def serialize_dispense_log(log):
    return {
        'id': str(log.id),
        'patient_id': str(log.patient_id),
        'patient_name': log.patient.full_name,
        'inventory_lot_id': str(log.inventory_lot_id),
        'lot_number': log.inventory_lot.lot_number,
        'dose_id': _id(log.dose_id),
        'medication_name': log.medication_name,
        'quantity': log.quantity,
        'date': log.date.isoformat(),
    }
