"""
Rental property and reservation tests for Tajer
"""
import io
import json
import os

import pytest

from conftest import headers_for
from errors import ValidationError

TENANT = 'tenant@example.com'


def _image(name='front.jpg', size=64, content_type='image/jpeg'):
    return (io.BytesIO(b'\xff' * size), name, content_type)


def _upload(client, reservation_id, email=TENANT, **files):
    data = {'reservation_id': str(reservation_id), 'email': email}
    for field, (stream, name, content_type) in files.items():
        data[field] = (stream, name, content_type)
    return client.post('/api/reservations/upload-id', data=data, content_type='multipart/form-data')


@pytest.fixture
def listing(reservations, landlord):
    return reservations.create_property(landlord.id, 'Garden studio', 60, city='Beirut',
                                        address='3 Jasmine Ln')


@pytest.fixture
def offer(reservations, listing):
    return reservations.submit(listing.id, TENANT, '2026-12-10', '2026-12-14', 250,
                               tenant_name='Tala', message='Quiet guest')


class TestProperties:
    """Property listings and availability ranges"""

    def test_landlord_creates_property(self, client, landlord):
        response = client.post('/api/properties', headers=headers_for(landlord), data=json.dumps({
            'title': 'Hillside cabin',
            'price': 95,
            'city': 'Byblos',
        }))

        assert response.status_code == 201
        prop = json.loads(response.data)['property']
        assert prop['landlord_id'] == landlord.id
        assert prop['price'] == 95.0

    def test_customer_cannot_create_property(self, client, customer):
        response = client.post('/api/properties', headers=headers_for(customer),
                               data=json.dumps({'title': 'Nope', 'price': 10}))
        assert response.status_code == 403
        assert json.loads(response.data)['error'] == 'Landlord access required'

    def test_property_requires_title_and_price(self, client, landlord):
        response = client.post('/api/properties', headers=headers_for(landlord),
                               data=json.dumps({'title': '', 'price': 10}))
        assert response.status_code == 400

        response = client.post('/api/properties', headers=headers_for(landlord),
                               data=json.dumps({'title': 'Flat', 'price': -1}))
        assert response.status_code == 400

    def test_list_by_city(self, client, reservations, landlord, listing):
        reservations.create_property(landlord.id, 'Port loft', 120, city='Tyre')

        response = client.get('/api/properties?city=beirut')

        titles = [p['title'] for p in json.loads(response.data)['properties']]
        assert titles == ['Garden studio']

    def test_set_availability_range(self, client, landlord, listing):
        response = client.post('/api/properties/{}/availability/range'.format(listing.id),
                               headers=headers_for(landlord),
                               data=json.dumps({'start_date': '2026-12-01', 'end_date': '2026-12-31'}))

        assert response.status_code == 200
        availability = json.loads(response.data)['availability']
        assert availability['start_date'] == '2026-12-01'
        assert availability['end_date'] == '2026-12-31'

        response = client.get('/api/properties/{}'.format(listing.id))
        assert json.loads(response.data)['property']['availability']['is_available'] is True

    def test_availability_range_is_replaced(self, reservations, landlord, listing):
        reservations.set_availability(listing.id, landlord.id, '2026-12-01', '2026-12-31')
        availability = reservations.set_availability(listing.id, landlord.id, '2027-01-01')

        assert availability.start_date.isoformat() == '2027-01-01'
        assert availability.end_date is None

    def test_only_owner_sets_availability(self, client, user_factory, listing):
        other = user_factory('landlord')
        response = client.post('/api/properties/{}/availability/range'.format(listing.id),
                               headers=headers_for(other),
                               data=json.dumps({'start_date': '2026-12-01'}))
        assert response.status_code == 403

    def test_end_before_start_rejected(self, reservations, landlord, listing):
        with pytest.raises(ValidationError):
            reservations.set_availability(listing.id, landlord.id, '2026-12-10', '2026-12-01')


class TestAvailability:
    """Per-day availability"""

    def test_days_reflect_range_and_requests(self, client, reservations, landlord, listing):
        reservations.set_availability(listing.id, landlord.id, '2026-12-02', '2026-12-05')
        reservations.submit(listing.id, TENANT, '2026-12-04', '2026-12-04', 60)

        response = client.get('/api/properties/{}/availability?from=2026-12-01&to=2026-12-06'.format(listing.id))

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['property_id'] == listing.id
        assert [(d['date'], d['available']) for d in data['days']] == [
            ('2026-12-01', False),
            ('2026-12-02', True),
            ('2026-12-03', True),
            ('2026-12-04', False),
            ('2026-12-05', True),
            ('2026-12-06', False),
        ]

    def test_no_range_means_open(self, reservations, listing):
        days = reservations.availability(listing.id, '2026-12-01', '2026-12-02')
        assert all(d['available'] for d in days)

    def test_rejected_reservation_frees_dates(self, reservations, landlord, listing, offer):
        reservations.reject(offer.id, landlord.id)
        days = reservations.availability(listing.id, '2026-12-10', '2026-12-14')
        assert all(d['available'] for d in days)

    def test_from_and_to_required(self, client, listing):
        response = client.get('/api/properties/{}/availability?from=2026-12-01'.format(listing.id))
        assert response.status_code == 400


class TestSubmitReservation:
    """Tenant offers"""

    def test_submit_reservation(self, client, listing, notifier):
        response = client.post('/api/reservations', json={
            'property_id': listing.id,
            'email': 'Tenant@Example.com',
            'name': 'Tala',
            'start_date': '2026-12-10',
            'end_date': '2026-12-14',
            'offer_price': 250,
            'message': 'Quiet guest',
        })

        assert response.status_code == 201
        reservation = json.loads(response.data)['reservation']
        assert reservation['status'] == 'pending'
        assert reservation['tenant_email'] == TENANT
        assert reservation['property_title'] == 'Garden studio'
        assert notifier.subjects('lina@example.com') == ['New reservation request for Garden studio']

    def test_overlapping_request_rejected(self, client, listing, offer):
        response = client.post('/api/reservations', json={
            'property_id': listing.id,
            'email': 'other@example.com',
            'start_date': '2026-12-14',
            'end_date': '2026-12-16',
            'offer_price': 150,
        })

        assert response.status_code == 400
        assert json.loads(response.data)['error'] == 'Those dates are already requested or booked'

    def test_outside_availability_rejected(self, reservations, landlord, listing):
        reservations.set_availability(listing.id, landlord.id, '2026-12-01', '2026-12-05')
        with pytest.raises(ValidationError) as exc:
            reservations.submit(listing.id, TENANT, '2026-12-04', '2026-12-07', 100)
        assert exc.value.message == 'Property is not available for those dates'

    def test_end_before_start(self, client, listing):
        response = client.post('/api/reservations', json={
            'property_id': listing.id,
            'email': TENANT,
            'start_date': '2026-12-14',
            'end_date': '2026-12-10',
            'offer_price': 150,
        })
        assert response.status_code == 400

    def test_tenant_lists_own_reservations(self, client, offer):
        response = client.get('/api/reservations?email=TENANT@example.com')
        assert [r['id'] for r in json.loads(response.data)['reservations']] == [offer.id]

        response = client.get('/api/reservations?email=nobody@example.com')
        assert json.loads(response.data)['reservations'] == []

        response = client.get('/api/reservations')
        assert response.status_code == 400

    def test_tenant_lookup_requires_matching_email(self, client, offer):
        response = client.get('/api/reservations/{}?email=someone@example.com'.format(offer.id))
        assert response.status_code == 403

        response = client.get('/api/reservations/{}?email={}'.format(offer.id, TENANT))
        assert response.status_code == 200


class TestLandlordDecisions:
    """Accept, reject and document requests"""

    def test_landlord_lists_reservations(self, client, landlord, offer):
        response = client.get('/api/landlord/reservations?status=pending', headers=headers_for(landlord))
        ids = [r['id'] for r in json.loads(response.data)['reservations']]
        assert ids == [offer.id]

    def test_non_owner_cannot_decide(self, client, user_factory, offer):
        other = user_factory('landlord')
        response = client.post('/api/reservations/{}/accept'.format(offer.id), headers=headers_for(other),
                               data=json.dumps({}))
        assert response.status_code == 403
        assert offer.status == 'pending'

    def test_accept_without_id_waits_for_verification(self, client, landlord, offer, notifier):
        response = client.post('/api/reservations/{}/accept'.format(offer.id), headers=headers_for(landlord),
                               data=json.dumps({'note': 'Welcome!'}))

        assert response.status_code == 200
        assert offer.status == 'accepted_pending_verification'
        assert offer.landlord_note == 'Welcome!'
        assert 'action=upload-id' in notifier.to(TENANT)[-1]['html']

    def test_reject(self, client, landlord, offer):
        response = client.post('/api/reservations/{}/reject'.format(offer.id), headers=headers_for(landlord),
                               data=json.dumps({'note': 'Dates taken'}))
        assert response.status_code == 200
        assert offer.status == 'rejected'

        response = client.post('/api/reservations/{}/accept'.format(offer.id), headers=headers_for(landlord),
                               data=json.dumps({}))
        assert response.status_code == 409

    def test_documents_round_trip(self, client, landlord, offer):
        response = client.post('/api/reservations/{}/request-documents'.format(offer.id),
                               headers=headers_for(landlord), data=json.dumps({'note': 'Please send ID'}))
        assert response.status_code == 200
        assert offer.status == 'documents_requested'

        response = _upload(client, offer.id, frontId=_image())
        assert response.status_code == 200
        assert offer.status == 'pending'
        assert offer.id_front is not None

        response = client.post('/api/reservations/{}/accept'.format(offer.id), headers=headers_for(landlord),
                               data=json.dumps({}))
        assert offer.status == 'accepted'


class TestIdUpload:
    """ID document uploads"""

    def test_upload_completes_verification(self, client, reservations, landlord, offer, notifier, tmp_path):
        reservations.accept(offer.id, landlord.id)

        response = _upload(client, offer.id, frontId=_image(), selfie=_image('me.png', content_type='image/png'))

        assert response.status_code == 200
        assert offer.status == 'accepted'
        assert os.path.exists(os.path.join(str(tmp_path), offer.id_front))
        assert offer.id_selfie.endswith('.png')
        assert offer.id_back is None
        assert 'action=pay' in notifier.to(TENANT)[-1]['html']

    def test_front_required(self, client, offer):
        response = _upload(client, offer.id, backId=_image('back.jpg'))
        assert response.status_code == 400
        assert json.loads(response.data)['error'] == 'frontId is required'

    def test_non_image_rejected(self, client, offer):
        response = _upload(client, offer.id, frontId=(io.BytesIO(b'%PDF'), 'id.pdf', 'application/pdf'))
        assert response.status_code == 400

    def test_oversize_rejected(self, client, reservations, offer):
        reservations.max_id_image_size = 1024
        response = _upload(client, offer.id, frontId=_image(size=2048))
        assert response.status_code == 400
        assert offer.id_front is None

    def test_wrong_email_rejected(self, client, offer):
        response = _upload(client, offer.id, email='intruder@example.com', frontId=_image())
        assert response.status_code == 403

    def test_upload_after_payment_rejected(self, client, reservations, landlord, offer):
        reservations.accept(offer.id, landlord.id)
        _upload(client, offer.id, frontId=_image())
        session = reservations.start_checkout(offer.id, TENANT)
        reservations.mark_paid(session['id'])

        response = _upload(client, offer.id, frontId=_image())
        assert response.status_code == 409


class TestCheckout:
    """Reservation payment through Stripe Checkout"""

    def test_checkout_before_accept(self, client, offer):
        response = client.post('/api/reservations/{}/checkout'.format(offer.id), json={'email': TENANT})
        assert response.status_code == 409

    def test_checkout_requires_verified_id(self, client, reservations, landlord, offer):
        reservations.accept(offer.id, landlord.id)
        response = client.post('/api/reservations/{}/checkout'.format(offer.id), json={'email': TENANT})
        assert response.status_code == 409

    def test_full_flow(self, client, reservations, landlord, offer, gateway, notifier):
        reservations.accept(offer.id, landlord.id)
        _upload(client, offer.id, frontId=_image())

        response = client.post('/api/reservations/{}/checkout'.format(offer.id), json={'email': TENANT})

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['url'] == 'https://checkout.test/{}'.format(data['session_id'])
        checkout = gateway.checkout_sessions[0]
        assert checkout['metadata'] == {'type': 'reservation', 'reservation_id': str(offer.id)}
        assert checkout['line_items'][0]['price'] == 250.0
        assert checkout['customer_email'] == TENANT

        reservations.mark_paid(data['session_id'])
        assert offer.status == 'paid'
        assert notifier.to(TENANT)[-1]['subject'] == 'Update on your reservation request'

    def test_checkout_wrong_email(self, client, reservations, landlord, offer):
        reservations.accept(offer.id, landlord.id)
        response = client.post('/api/reservations/{}/checkout'.format(offer.id), json={'email': 'x@example.com'})
        assert response.status_code == 403
