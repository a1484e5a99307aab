"""Tests for the banking API: connect flow, connections, accounts and transactions."""

from datetime import datetime, timedelta
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest

from ledgerly.app import models
from ledgerly.app.bank_integration.errors import SessionNotFoundError
from tests.conftest import headers_for, make_account, make_connection, make_transaction, make_user


def initiate(client, headers, provider_name):
    response = client.post(
        "/api/banking/connections/initiate", json={"provider_name": provider_name}, headers=headers
    )
    assert response.status_code == 200, response.text
    return response.json()


class TestProviders:
    def test_requires_authentication(self, client):
        assert client.get("/api/banking/providers").status_code == 401

    def test_lists_supported_providers(self, client, auth_headers):
        response = client.get("/api/banking/providers", headers=auth_headers)
        assert response.status_code == 200
        assert [p['id'] for p in response.json()] == ['truelayer', 'sibs']


class TestInitiate:
    def test_direct_redirect_provider(self, client, auth_headers, session_store):
        body = initiate(client, auth_headers, "truelayer")

        assert body['requires_bank_selection'] is False
        assert body['banks'] is None
        assert parse_qs(urlparse(body['auth_url']).query)['state'] == [body['session_id']]
        assert session_store.get(body['session_id'])['provider_name'] == 'truelayer'

    def test_bank_selection_provider(self, client, auth_headers):
        body = initiate(client, auth_headers, "sibs")

        assert body['requires_bank_selection'] is True
        assert body['auth_url'] is None
        assert body['banks'][0] == {
            'id': 'BCP', 'name': 'Millennium BCP', 'region': 'PT', 'logo': 'https://logos.test/bcp.png'
        }

    def test_unknown_provider(self, client, auth_headers):
        response = client.post(
            "/api/banking/connections/initiate", json={"provider_name": "plaid"}, headers=auth_headers
        )
        assert response.status_code == 400

    def test_free_plan_cannot_connect(self, client, db):
        free_user = make_user(db, email="free@example.com", plan=models.SubscriptionPlan.FREE)

        response = client.post(
            "/api/banking/connections/initiate", json={"provider_name": "truelayer"}, headers=headers_for(free_user)
        )
        assert response.status_code == 403

    def test_pro_plan_connection_limit(self, client, db, encryption, user, auth_headers):
        make_connection(db, encryption, user)
        make_connection(db, encryption, user)

        response = client.post(
            "/api/banking/connections/initiate", json={"provider_name": "truelayer"}, headers=auth_headers
        )
        assert response.status_code == 403

    def test_disconnected_connections_do_not_count(self, client, db, encryption, user, auth_headers):
        make_connection(db, encryption, user)
        make_connection(db, encryption, user, status=models.BankConnectionStatus.DISCONNECTED)

        initiate(client, auth_headers, "truelayer")


class TestSelectBank:
    def test_returns_consent_redirect(self, client, auth_headers, session_store):
        session_id = initiate(client, auth_headers, "sibs")['session_id']

        response = client.post("/api/banking/connections/select-bank", headers=auth_headers, json={
            "session_id": session_id, "bank_id": "BCP", "provider_name": "sibs",
        })

        assert response.status_code == 200
        assert urlparse(response.json()['auth_url']).path == '/auth/BCP'
        assert session_store.get(session_id)['bank_id'] == 'BCP'

    def test_rejected_for_direct_redirect_provider(self, client, auth_headers):
        session_id = initiate(client, auth_headers, "truelayer")['session_id']

        response = client.post("/api/banking/connections/select-bank", headers=auth_headers, json={
            "session_id": session_id, "bank_id": "BCP", "provider_name": "truelayer",
        })
        assert response.status_code == 400

    def test_session_of_another_user(self, client, auth_headers, other_user):
        session_id = initiate(client, headers_for(other_user), "sibs")['session_id']

        response = client.post("/api/banking/connections/select-bank", headers=auth_headers, json={
            "session_id": session_id, "bank_id": "BCP", "provider_name": "sibs",
        })
        assert response.status_code == 400

    def test_expired_session(self, client, auth_headers, session_store):
        response = client.post("/api/banking/connections/select-bank", headers=auth_headers, json={
            "session_id": "gone", "bank_id": "BCP", "provider_name": "sibs",
        })
        assert response.status_code == 400


class TestCompleteConnection:
    def test_truelayer_happy_path(self, client, db, auth_headers, user, upstream, encryption, session_store):
        upstream.truelayer.transactions['tl-acc-1'] = [{
            'transaction_id': 't1', 'timestamp': '2024-05-02T10:00:00Z', 'amount': -12.5,
            'transaction_type': 'DEBIT', 'description': 'PINGO DOCE LISBOA',
        }]
        session_id = initiate(client, auth_headers, "truelayer")['session_id']

        response = client.post("/api/banking/connections/complete", headers=auth_headers, json={
            "code": "code1", "state": session_id, "provider_name": "truelayer",
        })

        assert response.status_code == 200, response.text
        body = response.json()
        assert body['success'] is True

        connection = db.query(models.BankConnection).filter_by(id=body['connection_id']).one()
        assert connection.user_id == user.id
        assert connection.status == models.BankConnectionStatus.ACTIVE
        assert connection.provider_account_id == 'ob-lloyds'
        # Stored encrypted
        assert connection.access_token != 'access-code1'
        assert encryption.decrypt(connection.access_token) == 'access-code1'

        # Initial sync ran
        assert db.query(models.BankAccount).filter_by(connection_id=connection.id).count() == 1
        assert db.query(models.BankTransaction).filter_by(id='t1').one().amount == Decimal('-12.50')

        with pytest.raises(SessionNotFoundError):
            session_store.get(session_id)

    def test_each_exchange_creates_a_new_connection(self, client, db, auth_headers):
        for code in ("code1", "code2"):
            session_id = initiate(client, auth_headers, "truelayer")['session_id']
            response = client.post("/api/banking/connections/complete", headers=auth_headers, json={
                "code": code, "state": session_id, "provider_name": "truelayer",
            })
            assert response.status_code == 200

        assert db.query(models.BankConnection).count() == 2

    def test_unknown_session(self, client, auth_headers):
        response = client.post("/api/banking/connections/complete", headers=auth_headers, json={
            "code": "code1", "state": "unknown", "provider_name": "truelayer",
        })
        assert response.status_code == 400

    def test_provider_mismatch(self, client, db, auth_headers):
        session_id = initiate(client, auth_headers, "truelayer")['session_id']

        response = client.post("/api/banking/connections/complete", headers=auth_headers, json={
            "code": "code1", "state": session_id, "provider_name": "sibs",
        })

        assert response.status_code == 400
        assert db.query(models.BankConnection).count() == 0

    def test_rejected_code(self, client, db, auth_headers):
        session_id = initiate(client, auth_headers, "truelayer")['session_id']

        response = client.post("/api/banking/connections/complete", headers=auth_headers, json={
            "code": "bad-code", "state": session_id, "provider_name": "truelayer",
        })

        assert response.status_code == 502
        assert db.query(models.BankConnection).count() == 0


class TestCallback:
    def redirect(self, client, params):
        response = client.get("/api/banking/callback", params=params, follow_redirects=False)
        assert response.status_code in (302, 307)
        return response.headers['location']

    def test_missing_params(self, client):
        assert self.redirect(client, {"code": "abc"}) == "http://frontend.test/banking?error=missing_params"

    def test_unknown_session(self, client):
        location = self.redirect(client, {"code": "abc", "state": "nope"})
        assert location == "http://frontend.test/banking?error=auth_required"

    def test_failed_exchange(self, client, auth_headers):
        session_id = initiate(client, auth_headers, "truelayer")['session_id']

        location = self.redirect(client, {"code": "bad-code", "state": session_id})
        assert location == "http://frontend.test/banking?error=connection_failed"

    def test_sibs_flow_through_callback(self, client, db, auth_headers, user):
        session_id = initiate(client, auth_headers, "sibs")['session_id']
        client.post("/api/banking/connections/select-bank", headers=auth_headers, json={
            "session_id": session_id, "bank_id": "CGD", "provider_name": "sibs",
        })

        location = self.redirect(client, {"code": "xyz", "state": session_id})

        assert location == "http://frontend.test/banking?success=true"
        connection = db.query(models.BankConnection).one()
        assert connection.user_id == user.id
        assert connection.provider_name == 'sibs'
        assert connection.consent_id == 'consent-1'
        assert connection.bank_id == 'CGD'
        assert db.query(models.BankAccount).filter_by(id='sibs-acc-1').count() == 1


class TestConnections:
    def test_lists_own_connections_newest_first(self, client, db, encryption, user, other_user, auth_headers):
        older = make_connection(db, encryption, user, created_at=datetime(2024, 1, 1))
        newer = make_connection(
            db, encryption, user, created_at=datetime(2024, 3, 1), status=models.BankConnectionStatus.ERROR
        )
        make_connection(db, encryption, other_user)

        response = client.get("/api/banking/connections", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert [c['id'] for c in body] == [newer.id, older.id]
        assert body[0]['status'] == 'error'
        assert 'access_token' not in body[0]

    def test_disconnect(self, client, db, encryption, user, auth_headers, upstream):
        connection = make_connection(db, encryption, user)

        response = client.delete(f"/api/banking/connections/{connection.id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {'success': True}
        assert upstream.truelayer.revoked == ['Bearer access-1']

        db.refresh(connection)
        assert connection.status == models.BankConnectionStatus.DISCONNECTED
        assert connection.access_token is None
        assert connection.refresh_token is None
        assert connection.expires_at is None

    def test_disconnect_when_revoke_fails(self, client, db, encryption, user, auth_headers, upstream):
        upstream.truelayer.fail_revoke = True
        connection = make_connection(db, encryption, user)

        response = client.delete(f"/api/banking/connections/{connection.id}", headers=auth_headers)

        assert response.status_code == 200
        db.refresh(connection)
        assert connection.status == models.BankConnectionStatus.DISCONNECTED

    def test_disconnect_sibs_without_consent(self, client, db, encryption, user, auth_headers, upstream):
        connection = make_connection(db, encryption, user, provider_name='sibs', consent_id=None)

        response = client.delete(f"/api/banking/connections/{connection.id}", headers=auth_headers)

        assert response.status_code == 200
        assert upstream.sibs.deleted_consents == []

    def test_disconnect_twice(self, client, db, encryption, user, auth_headers):
        connection = make_connection(db, encryption, user)
        client.delete(f"/api/banking/connections/{connection.id}", headers=auth_headers)

        response = client.delete(f"/api/banking/connections/{connection.id}", headers=auth_headers)
        assert response.status_code == 409

    def test_disconnect_someone_elses_connection(self, client, db, encryption, other_user, auth_headers):
        connection = make_connection(db, encryption, other_user)

        response = client.delete(f"/api/banking/connections/{connection.id}", headers=auth_headers)

        assert response.status_code == 404
        db.refresh(connection)
        assert connection.status == models.BankConnectionStatus.ACTIVE


class TestAccounts:
    def test_only_accounts_of_active_connections(self, client, db, encryption, user, other_user, auth_headers):
        active = make_connection(db, encryption, user)
        gone = make_connection(db, encryption, user, status=models.BankConnectionStatus.DISCONNECTED)
        foreign = make_connection(db, encryption, other_user)
        make_account(db, active, 'a-old', last_updated=datetime(2024, 1, 1))
        make_account(db, active, 'a-new', last_updated=datetime(2024, 2, 1))
        make_account(db, gone, 'a-gone')
        make_account(db, foreign, 'a-foreign')

        response = client.get("/api/banking/accounts", headers=auth_headers)

        assert response.status_code == 200
        assert [a['id'] for a in response.json()] == ['a-new', 'a-old']

    def test_sync_account(self, client, db, encryption, user, auth_headers, upstream):
        connection = make_connection(db, encryption, user)
        make_account(db, connection, 'tl-acc-1')
        upstream.truelayer.transactions['tl-acc-1'] = [{
            'transaction_id': 't1', 'timestamp': '2024-05-02T10:00:00Z', 'amount': -3, 'transaction_type': 'DEBIT',
        }]

        response = client.post("/api/banking/accounts/tl-acc-1/sync", headers=auth_headers)

        assert response.status_code == 200, response.text
        assert response.json() == {
            'success': True,
            'accounts_synced': ['tl-acc-1'],
            'failed_accounts': [],
            'transactions_added': 1,
            'transactions_updated': 0,
        }

    def test_sync_disconnected_account(self, client, db, encryption, user, auth_headers):
        connection = make_connection(db, encryption, user, status=models.BankConnectionStatus.DISCONNECTED)
        make_account(db, connection, 'tl-acc-1')

        response = client.post("/api/banking/accounts/tl-acc-1/sync", headers=auth_headers)
        assert response.status_code == 409

    def test_sync_upstream_failure_can_be_retried(self, client, db, encryption, user, auth_headers, upstream):
        connection = make_connection(db, encryption, user)
        make_account(db, connection, 'tl-acc-1')
        upstream.truelayer.failing_accounts.add('tl-acc-1')

        response = client.post("/api/banking/accounts/tl-acc-1/sync", headers=auth_headers)
        assert response.status_code == 502

        upstream.truelayer.failing_accounts.clear()
        response = client.post("/api/banking/accounts/tl-acc-1/sync", headers=auth_headers)
        assert response.status_code == 200, response.text
        db.refresh(connection)
        assert connection.status == models.BankConnectionStatus.ACTIVE

    def test_sync_refresh_failure(self, client, db, encryption, user, auth_headers, upstream):
        connection = make_connection(db, encryption, user, expires_at=datetime.utcnow() - timedelta(hours=1))
        make_account(db, connection, 'tl-acc-1')
        upstream.truelayer.fail_refresh = True

        response = client.post("/api/banking/accounts/tl-acc-1/sync", headers=auth_headers)

        assert response.status_code == 409
        db.refresh(connection)
        assert connection.status == models.BankConnectionStatus.ERROR

    def test_sync_foreign_account(self, client, db, encryption, other_user, auth_headers):
        connection = make_connection(db, encryption, other_user)
        make_account(db, connection, 'tl-acc-1')

        response = client.post("/api/banking/accounts/tl-acc-1/sync", headers=auth_headers)
        assert response.status_code == 404


class TestTransactionPages:
    @pytest.fixture
    def account(self, db, encryption, user):
        return make_account(db, make_connection(db, encryption, user), 'acc-1')

    def fill(self, db, account, count):
        start = datetime(2024, 1, 1)
        for i in range(count):
            make_transaction(db, account, f"t{i:03d}", date=start + timedelta(days=i))

    def test_full_page_has_next_cursor(self, client, db, account, auth_headers):
        self.fill(db, account, 50)

        response = client.get("/api/banking/accounts/acc-1/transactions", headers=auth_headers)

        body = response.json()
        assert len(body['transactions']) == 50
        assert body['next_cursor'] == 50

        response = client.get(
            "/api/banking/accounts/acc-1/transactions", params={"cursor": 50}, headers=auth_headers
        )
        assert response.json() == {'transactions': [], 'next_cursor': None}

    def test_short_page_ends(self, client, db, account, auth_headers):
        self.fill(db, account, 49)

        body = client.get("/api/banking/accounts/acc-1/transactions", headers=auth_headers).json()

        assert len(body['transactions']) == 49
        assert body['next_cursor'] is None

    def test_newest_first_across_pages(self, client, db, account, auth_headers):
        self.fill(db, account, 5)

        first = client.get(
            "/api/banking/accounts/acc-1/transactions", params={"limit": 2}, headers=auth_headers
        ).json()
        second = client.get(
            "/api/banking/accounts/acc-1/transactions",
            params={"limit": 2, "cursor": first['next_cursor']},
            headers=auth_headers,
        ).json()

        assert [t['id'] for t in first['transactions']] == ['t004', 't003']
        assert [t['id'] for t in second['transactions']] == ['t002', 't001']
        assert second['next_cursor'] == 4

    @pytest.mark.parametrize('limit', [0, 101])
    def test_limit_bounds(self, client, account, auth_headers, limit):
        response = client.get(
            "/api/banking/accounts/acc-1/transactions", params={"limit": limit}, headers=auth_headers
        )
        assert response.status_code == 422

    def test_foreign_account(self, client, db, account, other_user):
        response = client.get("/api/banking/accounts/acc-1/transactions", headers=headers_for(other_user))
        assert response.status_code == 404


class TestTransactionActions:
    @pytest.fixture
    def transaction(self, db, encryption, user):
        account = make_account(db, make_connection(db, encryption, user), 'acc-1')
        return make_transaction(
            db, account, 'tx-1', amount='-42.75', date=datetime(2024, 5, 2),
            description='COMPRA 1234', merchant_name='Continente'
        )

    def test_categorize(self, client, db, transaction, auth_headers, categories):
        response = client.post(
            "/api/banking/transactions/tx-1/categorize",
            json={"category": str(categories['Shopping'].id)},
            headers=auth_headers,
        )

        assert response.status_code == 200
        db.refresh(transaction)
        assert transaction.category == str(categories['Shopping'].id)

    def test_categorize_foreign_transaction(self, client, transaction, other_user):
        response = client.post(
            "/api/banking/transactions/tx-1/categorize", json={"category": "1"}, headers=headers_for(other_user)
        )
        assert response.status_code == 404

    def test_link_expense(self, client, db, transaction, user, auth_headers, categories):
        expense = models.Expense(
            amount=Decimal('42.75'), expense_category_id=categories['Food'].id, created_by_id=user.id
        )
        db.add(expense)
        db.commit()

        response = client.post(
            "/api/banking/transactions/tx-1/link-expense", json={"expense_id": expense.id}, headers=auth_headers
        )

        assert response.status_code == 200
        db.refresh(transaction)
        assert transaction.expense_id == expense.id
        assert transaction.synced is True

    def test_link_someone_elses_expense(self, client, db, transaction, other_user, auth_headers, categories):
        expense = models.Expense(
            amount=Decimal('1.00'), expense_category_id=categories['Food'].id, created_by_id=other_user.id
        )
        db.add(expense)
        db.commit()

        response = client.post(
            "/api/banking/transactions/tx-1/link-expense", json={"expense_id": expense.id}, headers=auth_headers
        )
        assert response.status_code == 404

    def test_create_expense(self, client, db, transaction, user, auth_headers, categories):
        response = client.post(
            "/api/banking/transactions/tx-1/create-expense",
            json={"category_id": categories['Food'].id},
            headers=auth_headers,
        )

        assert response.status_code == 200, response.text
        expense = db.query(models.Expense).filter_by(id=response.json()['expense_id']).one()
        assert expense.amount == Decimal('42.75')
        assert expense.name == 'Continente'
        assert expense.description == 'COMPRA 1234'
        assert expense.related_date == datetime(2024, 5, 2)
        assert expense.created_by_id == user.id
        assert expense.is_recurring is False

        db.refresh(transaction)
        assert transaction.expense_id == expense.id
        assert transaction.synced is True

    def test_create_expense_fallbacks(self, client, db, transaction, auth_headers, categories):
        transaction.description = ''
        transaction.merchant_name = ''
        db.commit()

        response = client.post(
            "/api/banking/transactions/tx-1/create-expense",
            json={"category_id": categories['Other'].id, "notes": "cash back"},
            headers=auth_headers,
        )

        expense = db.query(models.Expense).filter_by(id=response.json()['expense_id']).one()
        assert expense.name == 'Bank Transaction'
        assert expense.description == 'Bank transaction\ncash back'

    def test_create_expense_unknown_category(self, client, db, transaction, auth_headers):
        response = client.post(
            "/api/banking/transactions/tx-1/create-expense", json={"category_id": 9999}, headers=auth_headers
        )

        assert response.status_code == 404
        assert db.query(models.Expense).count() == 0
