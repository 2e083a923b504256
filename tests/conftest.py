"""
Shared fixtures for all tests.

factory-boy factories live here so both unit/ and integration/ can import them.
"""
import pytest
from datetime import date
from django.test import Client

import factory
from therapy.models import (
    DismissedLog,
    Dose,
    InventoryLot,
    Milestone,
    Patient,
    Protocol,
    Treatment,
)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

class PatientFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Patient

    full_name = factory.Sequence(lambda n: f'Paciente {n}')


class ProtocolFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Protocol

    name = factory.Sequence(lambda n: f'Leuprorrelina 28d #{n}')
    frequency_days = 28


class MilestoneFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Milestone

    protocol = factory.SubFactory(ProtocolFactory)
    day_offset = 7
    message = 'check side effects'


class TreatmentFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Treatment

    patient = factory.SubFactory(PatientFactory)
    protocol = factory.SubFactory(ProtocolFactory)
    status = Treatment.Status.ONGOING
    start_date = date(2024, 1, 1)
    planned_doses_before_consult = 0


class InventoryLotFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = InventoryLot

    medication_name = 'Leuprorrelina 3.75mg'
    lot_number = factory.Sequence(lambda n: f'LOT-{1000 + n}')
    quantity = 10
    expiry_date = date(2099, 12, 31)
    active = True


class DoseFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = Dose

    treatment = factory.SubFactory(TreatmentFactory)
    cycle_number = 1
    scheduled_date = date(2024, 1, 1)
    application_date = factory.LazyAttribute(lambda o: o.scheduled_date)
    status = Dose.Status.PENDING


class DismissedLogFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = DismissedLog

    contact_id = factory.Sequence(lambda n: f'treatment-{n}_m_7')


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def api_client():
    """Django test client for integration tests."""
    return Client()


@pytest.fixture
def today():
    """固定的「今天」，让日期相关的断言不依赖运行日期。"""
    return date(2024, 3, 1)
