"""
Pytest fixtures for Quotebook backend tests.

Provides test database setup, caller headers, document factories and test client.
"""

import pytest
from quotebook import create_app
from quotebook.extensions import db
from quotebook.services import audit_service, invoice_service, quote_service


BUSINESS_A = 1
BUSINESS_B = 2
CLIENT_ID = 501
ACTOR_ID = 77


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'AUDIT_RETRY_ASYNC': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        audit_service._pending.clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        audit_service._pending.clear()


def caller_headers(business_id: int = BUSINESS_A, actor_id: int | None = ACTOR_ID, role: str = 'staff', client_id: int | None = None) -> dict:
    """Helper to create caller context headers."""
    headers = {'X-Business-Id': str(business_id), 'X-Caller-Role': role}
    if actor_id is not None:
        headers['X-Actor-Id'] = str(actor_id)
    if client_id is not None:
        headers['X-Client-Id'] = str(client_id)
    return headers


def item_payload(description: str = 'Labour', quantity='1', unit_price='1000.00', **extra) -> dict:
    payload = {'description': description, 'quantity': quantity, 'unit_price': unit_price}
    payload.update(extra)
    return payload


@pytest.fixture(scope='function')
def make_quote(db_session):
    """Factory for draft quotes with one 1000.00 line at 20% VAT by default."""
    def _make(business_id: int = BUSINESS_A, items=None, **fields):
        payload = {'client_id': CLIENT_ID, 'vat_rate': '20'}
        payload.update(fields)
        payload['items'] = [item_payload()] if items is None else items
        return quote_service.create_quote(business_id=business_id, payload=payload, actor_id=ACTOR_ID)
    return _make


@pytest.fixture(scope='function')
def accepted_quote(make_quote):
    """A quote taken through send and accept."""
    quote = make_quote()
    quote_service.send_quote(quote_id=quote.id, actor_id=ACTOR_ID)
    quote_service.accept_quote(quote_id=quote.id, actor_id=ACTOR_ID)
    return quote


@pytest.fixture(scope='function')
def make_invoice(db_session):
    """Factory for draft invoices; pass send=True to move them to sent."""
    def _make(business_id: int = BUSINESS_A, items=None, send: bool = False, **fields):
        payload = {'client_id': CLIENT_ID, 'vat_rate': '20'}
        payload.update(fields)
        payload['items'] = [item_payload()] if items is None else items
        invoice = invoice_service.create_invoice(business_id=business_id, payload=payload, actor_id=ACTOR_ID)
        if send:
            invoice_service.send_invoice(invoice_id=invoice.id, actor_id=ACTOR_ID)
        return invoice
    return _make
