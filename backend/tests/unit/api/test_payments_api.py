"""
API tests for payment endpoints and the gateway webhook.
"""
import json
import pytest
from datetime import timedelta
from decimal import Decimal
from rest_framework import status
from rest_framework.test import APIClient
from django.urls import reverse
from django.utils import timezone

from apps.cycles.models import OrderCycle, Participant
from apps.payments.models import PaymentRecord, SignatureFailure, WebhookEvent
from apps.payments.services.signatures import payment_signature, webhook_signature
from tests.conftest import PaymentRecordFactory, UserFactory, item


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def open_window(ledger, store, state_machine, test_group, now):
    """A cycle whose payment window opened just now, with one member owing 149.50."""
    payer = UserFactory()
    cycle_id = ledger.place_order(
        test_group.id, payer, [item('rice', 1, unit_price='149.50')], now=now
    ).data['cycle_id']
    ledger.place_order(test_group.id, UserFactory(), [item('rice', 1)], now=now)
    store.transact(
        cycle_id, state_machine.apply_due_deadlines, now=now + timedelta(hours=48)
    )
    return OrderCycle.objects.get(pk=cycle_id), payer


@pytest.mark.django_db
class TestCreateIntentAPI:

    def test_create_intent(self, api_client, mock_gateway, open_window):
        cycle, payer = open_window
        api_client.force_authenticate(payer)

        response = api_client.post(
            reverse('payments:create-intent'),
            {'cycle_id': cycle.id, 'amount': '149.50'},
            format='json'
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data['amount_minor_units'] == 14950
        assert response.data['order_id'].startswith('order_cycle')
        assert mock_gateway.orders[0]['currency'] == 'INR'

    def test_wrong_amount_is_rejected(self, api_client, mock_gateway, open_window):
        cycle, payer = open_window
        api_client.force_authenticate(payer)

        response = api_client.post(
            reverse('payments:create-intent'),
            {'cycle_id': cycle.id, 'amount': '10.00'},
            format='json'
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert mock_gateway.orders == []

    def test_outsider_has_nothing_to_pay(self, api_client, mock_gateway, open_window):
        cycle, _ = open_window
        api_client.force_authenticate(UserFactory())

        response = api_client.post(
            reverse('payments:create-intent'),
            {'cycle_id': cycle.id, 'amount': '149.50'},
            format='json'
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_requires_authentication(self, api_client, open_window):
        cycle, _ = open_window

        response = api_client.post(
            reverse('payments:create-intent'),
            {'cycle_id': cycle.id, 'amount': '149.50'},
            format='json'
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_missing_fields(self, api_client, test_user):
        api_client.force_authenticate(test_user)

        response = api_client.post(reverse('payments:create-intent'), {}, format='json')

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data['error_code'] == 'invalid-argument'
        assert 'cycle_id' in response.data['details']


@pytest.mark.django_db
class TestVerifyAPI:

    def _create(self, api_client, cycle):
        response = api_client.post(
            reverse('payments:create-intent'),
            {'cycle_id': cycle.id, 'amount': '149.50'},
            format='json'
        )
        return response.data['order_id']

    def test_valid_signature_marks_paid(self, api_client, mock_gateway, open_window):
        cycle, payer = open_window
        api_client.force_authenticate(payer)
        order_id = self._create(api_client, cycle)

        response = api_client.post(reverse('payments:verify'), {
            'order_id': order_id,
            'payment_id': 'pay_api_1',
            'signature': payment_signature(order_id, 'pay_api_1'),
        }, format='json')

        assert response.status_code == status.HTTP_200_OK
        assert response.data == {'verified': True}
        participant = Participant.objects.get(cycle=cycle, user=payer)
        assert participant.payment_status == Participant.PAYMENT_PAID

    def test_bad_signature(self, api_client, mock_gateway, open_window):
        cycle, payer = open_window
        api_client.force_authenticate(payer)
        order_id = self._create(api_client, cycle)

        response = api_client.post(reverse('payments:verify'), {
            'order_id': order_id,
            'payment_id': 'pay_api_1',
            'signature': '0' * 64,
        }, format='json')

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert SignatureFailure.objects.get().gateway_order_id == order_id
        record = PaymentRecord.objects.get(gateway_order_id=order_id)
        assert record.status == PaymentRecord.STATUS_CREATED


@pytest.mark.django_db
class TestRefundAPI:

    def setup_method(self):
        self.url = reverse('payments:refund')

    def test_admin_refunds_payment(self, api_client, admin_user, mock_gateway):
        record = PaymentRecordFactory(
            payment_id='pay_api_9',
            status=PaymentRecord.STATUS_PAID,
            participant__payment_status=Participant.PAYMENT_PAID
        )
        api_client.force_authenticate(admin_user)

        response = api_client.post(self.url, {'payment_id': 'pay_api_9'}, format='json')

        assert response.status_code == status.HTTP_200_OK
        assert response.data == {'refund_id': 'rfnd_1', 'status': 'processed'}
        record.refresh_from_db()
        assert record.status == PaymentRecord.STATUS_REFUNDED
        assert mock_gateway.refunds[0]['amount'] == 10000

    def test_member_cannot_refund(self, api_client, test_user, mock_gateway):
        api_client.force_authenticate(test_user)

        response = api_client.post(self.url, {'payment_id': 'pay_x'}, format='json')

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert mock_gateway.refunds == []

    def test_unknown_payment(self, api_client, admin_user, mock_gateway):
        api_client.force_authenticate(admin_user)

        response = api_client.post(self.url, {'payment_id': 'pay_nope'}, format='json')

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_amount_above_payment(self, api_client, admin_user, mock_gateway):
        PaymentRecordFactory(payment_id='pay_api_8', status=PaymentRecord.STATUS_PAID)
        api_client.force_authenticate(admin_user)

        response = api_client.post(
            self.url,
            {'payment_id': 'pay_api_8', 'amount_minor_units': 10001},
            format='json'
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST


@pytest.mark.django_db
class TestPaymentWebhook:
    """Test the webhook endpoint."""

    def setup_method(self):
        self.url = reverse('payment-webhook')

    def _post(self, client, event, signature=None, **headers):
        body = json.dumps(event).encode('utf-8')
        if signature is None:
            signature = webhook_signature(body)
        return client.post(
            self.url,
            data=body,
            content_type='application/json',
            HTTP_X_SIGNATURE=signature,
            **headers
        )

    def test_missing_signature(self, api_client):
        response = api_client.post(
            self.url, data=b'{}', content_type='application/json')

        assert response.status_code == 400
        assert response.json()['error'] == 'Missing signature'

    def test_invalid_signature(self, api_client):
        response = self._post(api_client, {'event': 'payment.captured'}, signature='bad')

        assert response.status_code == 400
        assert SignatureFailure.objects.filter(
            source=SignatureFailure.SOURCE_WEBHOOK).exists()

    def test_capture_event_marks_paid(self, api_client, mock_gateway):
        record = PaymentRecordFactory(
            gateway_order_id='order_hook_1',
            participant__total_amount=Decimal('100.00'),
            participant__cycle__phase=OrderCycle.PHASE_PAYMENT_WINDOW,
            participant__cycle__payment_window_ends_at=timezone.now() + timedelta(hours=6),
        )
        event = {
            'event': 'payment.captured',
            'payload': {'payment': {'entity': {
                'id': 'pay_hook_api', 'order_id': 'order_hook_1', 'amount': 10000
            }}}
        }

        response = self._post(api_client, event, HTTP_X_EVENT_ID='evt_api_1')

        assert response.status_code == 200
        assert response.json() == {'received': True, 'status': 'processed'}
        record.refresh_from_db()
        assert record.status == PaymentRecord.STATUS_PAID
        assert WebhookEvent.objects.filter(event_key='evt_api_1').exists()

    def test_unknown_event_is_acknowledged(self, api_client):
        event = {
            'event': 'settlement.processed',
            'payload': {'payment': {'entity': {'id': 'pay_settle_1'}}}
        }

        response = self._post(api_client, event, HTTP_X_EVENT_ID='evt_api_2')

        assert response.status_code == 200
        assert response.json()['status'] == WebhookEvent.STATUS_IGNORED
