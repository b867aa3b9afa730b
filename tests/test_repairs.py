"""
Repair request lifecycle tests for Tajer
Covers submission, quoting, deposit, completion and the final charge
"""
import json
import re

import pytest

from conftest import REQUESTER, PROVIDER, submit_repair, quote_and_accept, fund
from errors import AuthorizationError, InvalidTransitionError, PreconditionError, ValidationError
from models import db, ProviderAccount, RepairRequest


def _repair_payload(**overrides):
    payload = {
        'description': 'Broken washing machine drum',
        'image_urls': ['https://img.test/drum.jpg'],
        'requester_email': REQUESTER,
        'customer_address': '4 Olive Rd',
        'preferred_time': 'Weekday evenings',
    }
    payload.update(overrides)
    return payload


class TestSubmitRepair:
    """Repair request submission"""

    def test_submit_repair_request(self, client, notifier):
        response = client.post('/api/repairs', json=_repair_payload())

        assert response.status_code == 201
        data = json.loads(response.data)
        assert re.match(r'^R-\d{6}$', data['job_code'])
        assert data['repairId'] == data['repair']['id']
        assert data['repair']['status'] == 'open'
        assert data['repair']['completion_status'] == 'pending'
        assert data['repair']['deposit_amount'] == 20.0

        emails = notifier.to(REQUESTER)
        assert len(emails) == 1
        assert emails[0]['subject'] == 'Your Repair Request Is Being Processed'
        assert 'https://img.test/drum.jpg' in emails[0]['html']

    @pytest.mark.parametrize('field', ['description', 'customer_address', 'preferred_time', 'requester_email'])
    def test_missing_fields_rejected(self, client, field):
        response = client.post('/api/repairs', json=_repair_payload(**{field: ''}))
        assert response.status_code == 400
        assert field in json.loads(response.data)['error']

    def test_malformed_email_rejected(self, client):
        response = client.post('/api/repairs', json=_repair_payload(requester_email='not-an-email'))
        assert response.status_code == 400

    def test_list_open_newest_first(self, client, repairs):
        first = submit_repair(repairs, description='First')
        second = submit_repair(repairs, description='Second')
        taken = submit_repair(repairs, description='Taken')
        repairs.submit_quote(taken.id, PROVIDER, 'Sam', 'Fixer', 'Beirut', 90)

        response = client.get('/api/repairs/open')

        assert response.status_code == 200
        listed = json.loads(response.data)['repairs']
        assert [r['id'] for r in listed] == [second.id, first.id]
        assert 'requester_email' not in listed[0]

    def test_get_unknown_repair(self, client):
        response = client.get('/api/repairs/999')
        assert response.status_code == 404


class TestQuotes:
    """Provider quotes and the customer's decision"""

    def test_submit_quote(self, client, repairs, notifier):
        repair = submit_repair(repairs)

        response = client.post('/api/repairs/{}/quote'.format(repair.id), json={
            'provider_email': 'Pro@Example.com',
            'provider_first_name': 'Sam',
            'provider_last_name': 'Fixer',
            'provider_city': 'Beirut',
            'price_quote': 150,
        })

        assert response.status_code == 200
        assert repair.status == 'quoted'
        assert repair.provider_email == PROVIDER
        assert repair.price_quote == 150.0

        quote_email = notifier.to(REQUESTER)[-1]
        assert 'accept?code={}'.format(repair.job_code) in quote_email['html']
        assert 'reject?code={}'.format(repair.job_code) in quote_email['html']
        assert repair.job_code in notifier.subjects(PROVIDER)[0]

    @pytest.mark.parametrize('price', [0, -5, 'abc', None])
    def test_quote_price_must_be_positive(self, client, repairs, price):
        repair = submit_repair(repairs)
        response = client.post('/api/repairs/{}/quote'.format(repair.id), json={
            'provider_email': PROVIDER,
            'price_quote': price,
        })
        assert response.status_code == 400
        assert repair.status == 'open'

    def test_requote_replaces_provider(self, repairs):
        repair = submit_repair(repairs)
        repairs.submit_quote(repair.id, PROVIDER, 'Sam', 'Fixer', 'Beirut', 150)
        repairs.submit_quote(repair.id, 'other@example.com', 'Rita', 'Volt', 'Tyre', 120)
        assert repair.status == 'quoted'
        assert repair.provider_email == 'other@example.com'
        assert repair.price_quote == 120.0

    def test_accept_requires_matching_code(self, client, repairs):
        repair = submit_repair(repairs)
        repairs.submit_quote(repair.id, PROVIDER, 'Sam', 'Fixer', 'Beirut', 150)

        response = client.get('/api/repairs/{}/accept?code=R-000000'.format(repair.id))

        assert response.status_code == 403
        assert repair.status == 'quoted'

    def test_accept_from_email_link(self, client, repairs, gateway, notifier):
        repair = submit_repair(repairs)
        repairs.submit_quote(repair.id, PROVIDER, 'Sam', 'Fixer', 'Beirut', 150)

        response = client.get('/api/repairs/{}/accept?code={}'.format(repair.id, repair.job_code))

        assert response.status_code == 200
        assert b'Quote accepted' in response.data
        assert repair.status == 'accepted'
        account = ProviderAccount.query.filter_by(email=PROVIDER).one()
        assert repair.provider_stripe_account_id == account.stripe_account_id
        assert gateway.accounts[0]['idempotency_key'] == 'connect-account-pro@example.com'
        subjects = notifier.subjects(PROVIDER)
        assert 'Set up your Tajer payouts' in subjects
        assert any('accepted' in s for s in subjects)

    def test_accept_twice_conflicts(self, client, repairs):
        repair = submit_repair(repairs)
        quote_and_accept(repairs, repair)

        response = client.post('/api/repairs/{}/accept'.format(repair.id), json={'job_code': repair.job_code})

        assert response.status_code == 409

    def test_reject_quote(self, client, repairs):
        repair = submit_repair(repairs)
        repairs.submit_quote(repair.id, PROVIDER, 'Sam', 'Fixer', 'Beirut', 150)

        response = client.post('/api/repairs/{}/reject'.format(repair.id), json={'job_code': repair.job_code})

        assert response.status_code == 200
        assert repair.status == 'rejected'
        with pytest.raises(InvalidTransitionError):
            repairs.submit_quote(repair.id, PROVIDER, 'Sam', 'Fixer', 'Beirut', 100)


class TestConnectedAccounts:
    """Provider payout accounts"""

    def test_ensure_connected_account_is_idempotent(self, repairs, gateway):
        first, created = repairs.ensure_connected_account('Pro@Example.com')
        again, created_again = repairs.ensure_connected_account('pro@example.com')

        assert created is True
        assert created_again is False
        assert first.id == again.id
        assert len(gateway.accounts) == 1

    def test_second_job_reuses_account(self, repairs, gateway, notifier):
        quote_and_accept(repairs, submit_repair(repairs))
        quote_and_accept(repairs, submit_repair(repairs))

        assert len(gateway.accounts) == 1
        assert notifier.subjects(PROVIDER).count('Set up your Tajer payouts') == 1

    def test_onboarding_link(self, client, repairs):
        quote_and_accept(repairs, submit_repair(repairs))

        response = client.post('/api/repairs/providers/onboarding-link', json={'email': PROVIDER})

        assert response.status_code == 200
        assert json.loads(response.data)['url'].startswith('https://connect.test/onboard/')

    def test_onboarding_link_without_account(self, client):
        response = client.post('/api/repairs/providers/onboarding-link', json={'email': 'new@example.com'})
        assert response.status_code == 404

    def test_onboarding_return_syncs_account(self, client, repairs, gateway):
        account, _ = repairs.ensure_connected_account(PROVIDER)
        gateway.transfers_active = False

        response = client.get('/api/repairs/providers/onboarding/return?account={}'.format(account.stripe_account_id))

        assert response.status_code == 200
        assert b'Almost there' in response.data
        assert account.transfers_active is False
        assert account.details_submitted is True

    def test_onboarding_refresh_redirects(self, client, repairs):
        account, _ = repairs.ensure_connected_account(PROVIDER)

        response = client.get('/api/repairs/providers/onboarding/refresh?account={}'.format(account.stripe_account_id))

        assert response.status_code == 302
        assert response.headers['Location'] == 'https://connect.test/onboard/{}'.format(account.stripe_account_id)


class TestDeposit:
    """Deposit intent and saved payment method"""

    def test_start_deposit(self, client, repairs, gateway):
        repair = submit_repair(repairs)
        quote_and_accept(repairs, repair)

        response = client.post('/api/repairs/payments/start/{}'.format(repair.id))

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['client_secret'].endswith('_secret')
        assert data['amount'] == 20.0
        assert repair.status == 'accepted_pending_deposit'
        assert gateway.deposit_intents[0]['amount'] == 20.0
        assert gateway.deposit_intents[0]['metadata']['type'] == 'repair_deposit'

    def test_start_deposit_is_reentrant(self, repairs, gateway):
        repair = submit_repair(repairs)
        quote_and_accept(repairs, repair)

        first = repairs.start_deposit(repair.id)
        second = repairs.start_deposit(repair.id)

        assert first['payment_intent_id'] == second['payment_intent_id']
        assert len(gateway.deposit_intents) == 1
        assert len(gateway.customers) == 1

    def test_deposit_before_accept_conflicts(self, client, repairs):
        repair = submit_repair(repairs)
        response = client.post('/api/repairs/payments/start/{}'.format(repair.id))
        assert response.status_code == 409

    def test_save_payment_method(self, client, repairs, notifier):
        repair = submit_repair(repairs)
        quote_and_accept(repairs, repair)
        intent = repairs.start_deposit(repair.id)

        response = client.post('/api/repairs/save-payment-method', json={
            'repair_id': repair.id,
            'payment_intent_id': intent['payment_intent_id'],
        })

        assert response.status_code == 200
        assert repair.status == 'deposit_paid'
        assert repair.stripe_payment_method_id == 'pm_test_card'
        assert repair.deposit_paid_at is not None
        paid = [s for s in notifier.subjects(PROVIDER) if s.startswith('New Paid Repair Request')]
        assert len(paid) == 1

        repairs.save_payment_method(repair.id, intent['payment_intent_id'])
        paid = [s for s in notifier.subjects(PROVIDER) if s.startswith('New Paid Repair Request')]
        assert len(paid) == 1

    def test_save_payment_method_requires_succeeded_intent(self, repairs, gateway):
        repair = submit_repair(repairs)
        quote_and_accept(repairs, repair)
        intent = repairs.start_deposit(repair.id)
        gateway.intent_status = 'requires_payment_method'

        with pytest.raises(PreconditionError):
            repairs.save_payment_method(repair.id, intent['payment_intent_id'])
        assert repair.status == 'accepted_pending_deposit'
        assert repair.stripe_payment_method_id is None

    def test_save_payment_method_rejects_foreign_intent(self, client, repairs):
        repair = submit_repair(repairs)
        quote_and_accept(repairs, repair)
        repairs.start_deposit(repair.id)

        response = client.post('/api/repairs/save-payment-method', json={
            'repair_id': repair.id,
            'payment_intent_id': 'pi_someone_else',
        })

        assert response.status_code == 400


class TestCompletion:
    """Provider completion, price revision and customer confirmation"""

    def test_only_provider_can_mark_completed(self, client, funded_repair):
        response = client.post('/api/repairs/mark-completed', json={
            'job_code': funded_repair.job_code,
            'email': REQUESTER,
            'final_price': 150,
        })
        assert response.status_code == 403
        assert funded_repair.completion_status == 'pending'

    def test_mark_completed(self, client, funded_repair, notifier):
        response = client.post('/api/repairs/mark-completed', json={
            'job_code': funded_repair.job_code,
            'email': PROVIDER,
            'final_price': 150,
        })

        assert response.status_code == 200
        assert funded_repair.completion_status == 'provider_completed'
        assert funded_repair.final_price == 150.0
        assert funded_repair.completed_at is not None
        assert any('confirm' in s.lower() for s in notifier.subjects(REQUESTER))

    def test_mark_completed_requires_accepted_job(self, repairs):
        repair = submit_repair(repairs)
        repairs.submit_quote(repair.id, PROVIDER, 'Sam', 'Fixer', 'Beirut', 150)
        with pytest.raises(InvalidTransitionError):
            repairs.mark_completed(repair.job_code, PROVIDER, 150)

    def test_mark_completed_requires_price(self, repairs, funded_repair):
        with pytest.raises(ValidationError):
            repairs.mark_completed(funded_repair.job_code, PROVIDER, None)

    def test_revise_and_accept_final_price(self, client, repairs, funded_repair, notifier):
        response = client.post('/api/repairs/revise-price', json={
            'repair_id': funded_repair.id,
            'email': PROVIDER,
            'final_price': 180,
            'materials_cost': 35,
        })
        assert response.status_code == 200
        assert funded_repair.status == 'final_price_pending_user'
        assert funded_repair.materials_cost == 35.0
        assert any('Updated price' in s for s in notifier.subjects(REQUESTER))

        response = client.post('/api/repairs/accept-final-price', json={
            'job_code': funded_repair.job_code,
            'email': 'USER@example.com',
        })
        assert response.status_code == 200
        assert funded_repair.status == 'deposit_paid'

    def test_accept_final_price_without_card_returns_to_accepted(self, repairs):
        repair = submit_repair(repairs)
        quote_and_accept(repairs, repair)
        repairs.revise_price(repair.job_code, PROVIDER, 200)
        repairs.accept_final_price(repair.job_code, REQUESTER)
        assert repair.status == 'accepted'

    def test_confirm_blocked_until_revised_price_accepted(self, client, repairs, funded_repair, gateway):
        repairs.revise_price(funded_repair.job_code, PROVIDER, 200)
        repairs.mark_completed(funded_repair.job_code, PROVIDER, 200)

        response = client.post('/api/repairs/confirm-completion', json={
            'job_code': funded_repair.job_code,
            'email': REQUESTER,
        })

        assert response.status_code == 409
        assert gateway.charges == []
        assert funded_repair.status == 'final_price_pending_user'

        repairs.accept_final_price(funded_repair.job_code, REQUESTER)
        repair, _ = repairs.confirm_completion(funded_repair.job_code, REQUESTER)

        assert repair.status == 'completed'
        assert gateway.charges[0]['amount'] == 180.0

    def test_confirm_requires_requester(self, repairs, funded_repair):
        repairs.mark_completed(funded_repair.job_code, PROVIDER, 150)
        with pytest.raises(AuthorizationError):
            repairs.confirm_completion(funded_repair.job_code, PROVIDER)

    def test_confirm_requires_price_above_deposit(self, client, repairs, funded_repair, gateway):
        repairs.mark_completed(funded_repair.job_code, PROVIDER, 15)

        response = client.post('/api/repairs/confirm-completion', json={
            'job_code': funded_repair.job_code,
            'email': REQUESTER,
        })

        assert response.status_code == 409
        assert gateway.charges == []
        assert funded_repair.completion_status == 'provider_completed'

    def test_confirm_requires_saved_card(self, repairs, gateway):
        repair = submit_repair(repairs)
        quote_and_accept(repairs, repair)
        repairs.start_deposit(repair.id)
        repairs.mark_completed(repair.job_code, PROVIDER, 150)

        with pytest.raises(PreconditionError):
            repairs.confirm_completion(repair.job_code, REQUESTER)
        assert gateway.charges == []

    def test_confirm_before_provider_completed(self, repairs, funded_repair):
        with pytest.raises(InvalidTransitionError):
            repairs.confirm_completion(funded_repair.job_code, REQUESTER)


class TestEndToEnd:
    """Full repair flow with the default 10% platform fee and $20 deposit"""

    def test_full_flow_with_destination_charge(self, client, gateway, notifier):
        response = client.post('/api/repairs', json=_repair_payload())
        job = json.loads(response.data)
        repair = db.session.get(RepairRequest, job['repair']['id'])
        code = job['job_code']

        client.post('/api/repairs/{}/quote'.format(repair.id), json={
            'provider_email': PROVIDER,
            'provider_first_name': 'Sam',
            'provider_last_name': 'Fixer',
            'provider_city': 'Beirut',
            'price_quote': 150,
        })
        client.get('/api/repairs/{}/accept?code={}'.format(repair.id, code))
        intent = json.loads(client.post('/api/repairs/payments/start/{}'.format(repair.id)).data)
        client.post('/api/repairs/save-payment-method', json={
            'repair_id': repair.id,
            'payment_intent_id': intent['payment_intent_id'],
        })
        client.post('/api/repairs/mark-completed', json={
            'job_code': code, 'email': PROVIDER, 'final_price': 150,
        })

        response = client.post('/api/repairs/confirm-completion', json={
            'job_code': code, 'email': REQUESTER,
        })

        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['charged'] == 130.0
        assert data['payout'] == {'success': True, 'amount': 20.0, 'transfer_id': gateway.transfers[0]['id']}

        charge = gateway.charges[0]
        assert charge['amount'] == 130.0
        assert charge['application_fee'] == 15.0
        assert charge['destination'] == repair.provider_stripe_account_id
        assert charge['idempotency_key'] == 'final-{}'.format(repair.id)

        assert repair.status == 'completed'
        assert repair.completion_status == 'user_confirmed'
        assert repair.platform_fee_amount == 15.0
        assert repair.destination_transfer_amount == 115.0
        assert repair.payout_amount == 20.0
        assert repair.destination_transfer_amount + repair.payout_amount == 135.0
        assert gateway.transfers[0]['idempotency_key'] == 'payout-{}'.format(repair.id)

        assert any('receipt' in s.lower() for s in notifier.subjects(REQUESTER))
        assert any(s.startswith('Payout sent') for s in notifier.subjects(PROVIDER))

    def test_flow_without_active_transfers(self, client, repairs, funded_repair, gateway):
        gateway.transfers_active = False
        repairs.mark_completed(funded_repair.job_code, PROVIDER, 150)

        repair, payout = repairs.confirm_completion(funded_repair.job_code, REQUESTER)

        assert payout == {'success': False, 'reason': 'transfers_inactive'}
        charge = gateway.charges[0]
        assert charge['amount'] == 130.0
        assert charge['destination'] is None
        assert charge['application_fee'] is None
        assert charge['metadata']['platform_fee'] == '15.00'
        assert repair.destination_transfer_amount == 0.0
        assert gateway.transfers == []

        gateway.transfers_active = True
        account_id = repair.provider_stripe_account_id
        response = client.post('/webhook/connected', data=json.dumps({
            'type': 'account.updated',
            'data': {'object': {
                'id': account_id,
                'charges_enabled': True,
                'payouts_enabled': True,
                'details_submitted': True,
                'capabilities': {'transfers': 'active'},
            }},
        }), content_type='application/json')

        assert response.status_code == 200
        assert len(gateway.transfers) == 1
        assert gateway.transfers[0]['amount'] == 135.0
        assert repair.payout_amount == 135.0


class TestCheck:
    """Job lookup by code and email"""

    def test_check_roles(self, client, funded_repair):
        response = client.post('/api/repairs/check', json={'job_code': funded_repair.job_code, 'email': REQUESTER})
        assert json.loads(response.data)['role'] == 'user'

        response = client.post('/api/repairs/check', json={
            'job_code': funded_repair.job_code.lower(), 'email': 'PRO@example.com',
        })
        data = json.loads(response.data)
        assert data['role'] == 'provider'
        assert data['repair']['has_payment_method'] is True

    def test_camel_case_body(self, client, funded_repair):
        response = client.post('/api/repairs/mark-completed', json={
            'jobCode': funded_repair.job_code, 'email': PROVIDER, 'final_price': 150,
        })
        assert response.status_code == 200

        response = client.post('/api/repairs/check', json={'jobCode': funded_repair.job_code, 'email': REQUESTER})
        assert json.loads(response.data)['repair']['completion_status'] == 'provider_completed'

    def test_check_wrong_email(self, client, funded_repair):
        response = client.post('/api/repairs/check', json={'job_code': funded_repair.job_code, 'email': 'x@example.com'})
        assert response.status_code == 403

    def test_check_unknown_code(self, client):
        response = client.post('/api/repairs/check', json={'job_code': 'R-123456', 'email': REQUESTER})
        assert response.status_code == 404
