"""
Pytest configuration and fixtures for Group Buy tests.
Provides reusable test fixtures for models, services, and common test data.
"""
from faker import Faker
from factory.django import DjangoModelFactory
import factory
from django.utils import timezone
from datetime import timedelta
from decimal import Decimal
import pytest
import os
import sys
import django

# Add the backend directory to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Configure Django settings before any Django imports
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'groupbuy.settings.test')
django.setup()

# Now safe to import models
from apps.core.models import User  # noqa: E402
from apps.cycles.models import (  # noqa: E402
    BuyingGroup, OrderCycle, Participant, ParticipantItem
)
from apps.payments.models import PaymentRecord  # noqa: E402
from apps.payments.services.gateway import PaymentGateway  # noqa: E402

# Initialize Faker for realistic test data
fake = Faker('en_IN')


# ==================== Factory Classes ====================

class UserFactory(DjangoModelFactory):
    """Factory for creating test users."""

    class Meta:
        model = User
        skip_postgeneration_save = True

    email = factory.Sequence(lambda n: f'member{n}@example.com')
    username = factory.Sequence(lambda n: f'user{n}')
    first_name = factory.Faker('first_name')
    last_name = factory.Faker('last_name')
    phone_number = factory.LazyAttribute(
        lambda _: f"+91{fake.numerify('##########')}")
    role = User.ROLE_MEMBER
    is_active = True

    @factory.post_generation
    def password(self, create, extracted, **kwargs):
        if not create:
            return
        self.set_password(extracted or 'testpass123')
        self.save()


class AdminUserFactory(UserFactory):
    """Factory for users holding the admin role."""
    email = factory.Sequence(lambda n: f'admin{n}@example.com')
    role = User.ROLE_ADMIN


class BuyingGroupFactory(DjangoModelFactory):
    """Factory for creating buying groups."""

    class Meta:
        model = BuyingGroup

    name = factory.LazyAttribute(lambda _: f"{fake.city()} Co-op"[:200])
    description = factory.Faker('sentence')
    is_active = True
    collecting_hours = 48
    payment_window_hours = 24
    allow_mid_cycle_joins = False
    currency = 'INR'


class OrderCycleFactory(DjangoModelFactory):
    """
    Factory for order cycles. Derived totals are left empty; use the
    ledger (or ParticipantFactory + recompute) to populate them.
    """

    class Meta:
        model = OrderCycle

    group = factory.SubFactory(BuyingGroupFactory)
    phase = OrderCycle.PHASE_COLLECTING
    collecting_ends_at = factory.LazyFunction(
        lambda: timezone.now() + timedelta(hours=48))
    allow_mid_cycle_joins = factory.SelfAttribute('group.allow_mid_cycle_joins')
    currency = 'INR'


class ParticipantFactory(DjangoModelFactory):
    """Factory for participants (without items)."""

    class Meta:
        model = Participant

    cycle = factory.SubFactory(OrderCycleFactory)
    user = factory.SubFactory(UserFactory)
    user_name = factory.LazyAttribute(lambda o: o.user.display_name)
    total_amount = Decimal('0.00')
    payment_status = Participant.PAYMENT_PENDING
    order_status = Participant.ORDER_PLACED


class ParticipantItemFactory(DjangoModelFactory):
    """Factory for participant order lines."""

    class Meta:
        model = ParticipantItem

    participant = factory.SubFactory(ParticipantFactory)
    product_id = factory.Sequence(lambda n: f'sku-{n}')
    name = factory.Faker('word')
    quantity = 1
    unit_price = Decimal('100.00')
    retail_unit_price = Decimal('120.00')
    min_quantity = 1


class PaymentRecordFactory(DjangoModelFactory):
    """Factory for payment records attached to a participant."""

    class Meta:
        model = PaymentRecord

    participant = factory.SubFactory(ParticipantFactory)
    cycle = factory.SelfAttribute('participant.cycle')
    user = factory.SelfAttribute('participant.user')
    gateway_order_id = factory.Sequence(lambda n: f'pi_test_{n:06d}')
    amount_minor_units = 10000
    currency = 'INR'
    receipt = factory.LazyAttribute(
        lambda o: f"cycle{o.cycle.id}-p{o.participant.id}-{o.amount_minor_units}")
    status = PaymentRecord.STATUS_CREATED


# ==================== Test Doubles ====================

class FakeGateway(PaymentGateway):
    """In-memory gateway recording every call."""

    def __init__(self, fail_refunds=False):
        super().__init__()
        self.orders = []
        self.refunds = []
        self.fail_refunds = fail_refunds

    def create_order(self, amount_minor_units, currency, receipt, notes=None):
        order_id = f"order_{receipt}"
        self.orders.append({
            'id': order_id,
            'amount': amount_minor_units,
            'currency': currency,
            'receipt': receipt,
            'notes': notes,
        })
        return {
            'id': order_id,
            'status': 'created',
            'amount': amount_minor_units,
            'currency': currency,
            'client_secret': f"{order_id}_secret",
        }

    def refund(self, payment_id, amount_minor_units=None, idempotency_key=None, notes=None):
        if self.fail_refunds:
            from apps.core.services.base import GatewayError
            raise GatewayError("Refund failed at the payment provider")
        refund_id = f"rfnd_{len(self.refunds) + 1}"
        self.refunds.append({
            'id': refund_id,
            'payment_id': payment_id,
            'amount': amount_minor_units,
            'idempotency_key': idempotency_key,
        })
        return {'id': refund_id, 'status': 'processed', 'amount': amount_minor_units}


def item(product_id, quantity, unit_price='100.00', min_quantity=1, name=None):
    """Build an order item dict as submitted by clients."""
    return {
        'product_id': product_id,
        'name': name or product_id,
        'quantity': quantity,
        'unit_price': unit_price,
        'min_quantity': min_quantity,
    }


# ==================== Pytest Fixtures ====================

@pytest.fixture
def test_user(db):
    """Create a test member."""
    return UserFactory()


@pytest.fixture
def admin_user(db):
    """Create a user with the admin role."""
    return AdminUserFactory()


@pytest.fixture
def test_group(db):
    """Create a buying group with default timings."""
    return BuyingGroupFactory()


@pytest.fixture
def mid_cycle_group(db):
    """Create a buying group that accepts orders during the payment window."""
    return BuyingGroupFactory(allow_mid_cycle_joins=True)


@pytest.fixture
def now():
    """A fixed clock reading for deadline tests."""
    return timezone.now().replace(microsecond=0)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def mock_gateway(mocker, fake_gateway):
    """Route every reconciler built without an explicit gateway to the fake."""
    mocker.patch(
        'apps.payments.services.reconciler.get_payment_gateway',
        return_value=fake_gateway
    )
    return fake_gateway


# ==================== Service Fixtures ====================

@pytest.fixture
def store():
    from apps.cycles.services.store import CycleStore
    return CycleStore()


@pytest.fixture
def state_machine(store):
    from apps.cycles.services.state_machine import CycleStateMachine
    return CycleStateMachine(store=store)


@pytest.fixture
def ledger(store, state_machine):
    from apps.cycles.services.ledger import ParticipantLedger
    return ParticipantLedger(store=store, state_machine=state_machine)


@pytest.fixture
def scheduler(store, state_machine):
    from apps.cycles.services.scheduler import PhaseScheduler
    return PhaseScheduler(store=store, state_machine=state_machine)


@pytest.fixture
def reconciler(fake_gateway, store, state_machine):
    from apps.payments.services.reconciler import PaymentReconciler
    return PaymentReconciler(gateway=fake_gateway, store=store, state_machine=state_machine)
