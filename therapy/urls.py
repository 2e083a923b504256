from django.urls import path

from .views import (
    AdherenceSettingsView,
    AvailableLotsView,
    ContactFeedbackView,
    ContactResolveView,
    DismissContactView,
    DismissedContactListView,
    DispenseLogListView,
    DoseCreateView,
    DoseDetailView,
    DoseSurveyView,
    PatientListView,
    TreatmentDetailView,
    UpcomingContactsView,
)

urlpatterns = [
    path('doses/', DoseCreateView.as_view(), name='dose-create'),
    path('doses/<uuid:dose_id>/', DoseDetailView.as_view(), name='dose-detail'),
    path('doses/<uuid:dose_id>/survey/', DoseSurveyView.as_view(), name='dose-survey'),
    path('treatments/<uuid:treatment_id>/', TreatmentDetailView.as_view(), name='treatment-detail'),
    path('patients/', PatientListView.as_view(), name='patient-list'),
    path('contacts/upcoming/', UpcomingContactsView.as_view(), name='contact-upcoming'),
    path('contacts/dismiss/', DismissContactView.as_view(), name='contact-dismiss'),
    path('contacts/dismissed/', DismissedContactListView.as_view(), name='contact-dismissed'),
    path('contacts/<str:contact_id>/feedback/', ContactFeedbackView.as_view(), name='contact-feedback'),
    path('contacts/<str:contact_id>/resolve/', ContactResolveView.as_view(), name='contact-resolve'),
    path('settings/adherence/', AdherenceSettingsView.as_view(), name='settings-adherence'),
    path('inventory/available/', AvailableLotsView.as_view(), name='inventory-available'),
    path('dispense-logs/', DispenseLogListView.as_view(), name='dispense-log-list'),
]
