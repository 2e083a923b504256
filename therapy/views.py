"""
HTTP 层：只做「解析请求 → 调 service → 序列化响应」。

所有业务异常由 exception_handler.unified_exception_handler 统一格式化，
View 里不 try/except。
"""

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from . import contacts, doses, inventory, services, timeline
from .payloads import parse_body, parse_date, parse_days, parse_treatment_update, parse_uuid
from .serializers import (
    serialize_contact,
    serialize_dismissed_log,
    serialize_dispense_log,
    serialize_dose,
    serialize_lot,
    serialize_patients,
    serialize_treatment,
    serialize_treatment_detail,
)


class DoseCreateView(APIView):
    """POST /api/doses/"""

    def post(self, request):
        data = parse_body(request.data)
        treatment_id = parse_uuid(data.get('treatment_id'), 'treatment_id')
        dose = doses.create_dose(treatment_id, data)
        return Response(serialize_dose(dose), status=status.HTTP_201_CREATED)


class DoseDetailView(APIView):
    """GET / PATCH / DELETE /api/doses/<dose_id>/"""

    def get(self, request, dose_id):
        return Response(serialize_dose(doses.get_dose(dose_id)))

    def patch(self, request, dose_id):
        dose = doses.update_dose(dose_id, request.data)
        return Response(serialize_dose(dose))

    def delete(self, request, dose_id):
        doses.delete_dose(dose_id)
        return Response(status=status.HTTP_204_NO_CONTENT)


class DoseSurveyView(APIView):
    """PATCH /api/doses/<dose_id>/survey/"""

    def patch(self, request, dose_id):
        dose = doses.update_survey(dose_id, request.data)
        return Response(serialize_dose(dose))


class TreatmentDetailView(APIView):
    """GET / PATCH /api/treatments/<treatment_id>/"""

    def get(self, request, treatment_id):
        treatment, dose_list, milestones = services.get_treatment_detail(treatment_id)
        return Response(serialize_treatment_detail(treatment, dose_list, milestones))

    def patch(self, request, treatment_id):
        changes = parse_treatment_update(request.data)
        treatment = timeline.update_treatment(treatment_id, changes)
        return Response(serialize_treatment(treatment))


class PatientListView(APIView):
    """GET /api/patients/?search=&active=true|false"""

    def get(self, request):
        active = request.query_params.get('active')
        rows = services.list_patients_with_adherence(
            search=request.query_params.get('search'),
            active=None if active is None else active == 'true',
        )
        return Response(serialize_patients(rows))


class UpcomingContactsView(APIView):
    """GET /api/contacts/upcoming/?days=7"""

    def get(self, request):
        days = parse_days(request.query_params.get('days'))
        results = contacts.upcoming_contacts(days_ahead=days)
        return Response({'data': [serialize_contact(c) for c in results]})


class DismissContactView(APIView):
    """POST /api/contacts/dismiss/"""

    def post(self, request):
        data = parse_body(request.data)
        log = contacts.dismiss_contact(data.get('contact_id'), data.get('feedback'))
        return Response(serialize_dismissed_log(log), status=status.HTTP_201_CREATED)


class DismissedContactListView(APIView):
    """GET /api/contacts/dismissed/"""

    def get(self, request):
        logs = contacts.list_dismissed_contacts()
        return Response({'data': [serialize_dismissed_log(log) for log in logs]})


class ContactFeedbackView(APIView):
    """PATCH /api/contacts/<contact_id>/feedback/"""

    def patch(self, request, contact_id):
        data = parse_body(request.data)
        log = contacts.update_contact_feedback(contact_id, data.get('feedback'))
        return Response(serialize_dismissed_log(log))


class ContactResolveView(APIView):
    """POST /api/contacts/<contact_id>/resolve/"""

    def post(self, request, contact_id):
        log = contacts.resolve_contact_feedback(contact_id)
        return Response(serialize_dismissed_log(log))


class AdherenceSettingsView(APIView):
    """GET / PUT /api/settings/adherence/"""

    def get(self, request):
        return Response({'data': services.load_adherence_settings().as_mapping()})

    def put(self, request):
        data = parse_body(request.data)
        updated = services.update_adherence_settings(data.get('settings'))
        return Response({'data': updated.as_mapping()})


class AvailableLotsView(APIView):
    """GET /api/inventory/available/"""

    def get(self, request):
        return Response({'data': [serialize_lot(lot) for lot in inventory.available_lots()]})


class DispenseLogListView(APIView):
    """GET /api/dispense-logs/?patient_id=&medication_name=&from=&to="""

    def get(self, request):
        params = request.query_params
        patient_id = params.get('patient_id')
        logs = inventory.list_dispense_logs(
            patient_id=parse_uuid(patient_id, 'patient_id') if patient_id else None,
            medication_name=params.get('medication_name'),
            date_from=parse_date(params['from'], 'from') if params.get('from') else None,
            date_to=parse_date(params['to'], 'to') if params.get('to') else None,
        )
        return Response({'data': [serialize_dispense_log(log) for log in logs]})
