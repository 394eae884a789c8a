"""Shared fixtures: in-memory stores and a recording asyncpg stand-in."""

import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

import pytest

from listings import Listing, ListingStatus
from payments import PaymentService, default_providers
from payments.models import RefundResult
from transactions import TransactionService
from transactions.models import Transaction, TransactionEvent, TransactionStatus

TEST_SETTINGS = {
    'currency': 'BRL',
    'pix_key': 'vangarments@marketplace.com',
    'pix_expiration_minutes': 30,
}

SHIPPING_ADDRESS = {
    'name': 'Ana Souza',
    'street': 'Rua Augusta',
    'number': '1500',
    'city': 'Sao Paulo',
    'state': 'SP',
    'postal_code': '01304-001',
    'country': 'BR',
}

CARD_DETAILS = {
    'card_number': '4242424242424242',
    'expiry_month': 12,
    'expiry_year': 2030,
    'cvv': '123',
}


def _uuid(value) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class StoreUnavailable(Exception):
    """Raised by InMemoryMarketplace for methods listed in fail_on."""


class InMemoryMarketplace:
    """Listing store and transaction repository backed by dicts.

    ``transaction()`` snapshots state and restores it if the block raises,
    the way a rolled back database transaction would.
    """

    def __init__(self):
        self.users: Dict[UUID, Dict[str, Any]] = {}
        self.listings: Dict[UUID, Listing] = {}
        self.transactions: Dict[UUID, Transaction] = {}
        self.events: Dict[UUID, List[TransactionEvent]] = defaultdict(list)
        self.refunds: Dict[UUID, Dict[str, Any]] = {}
        self.writes = 0
        self.fail_on = set()
        self.open_transactions = 0

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise StoreUnavailable(f"{name} failed")

    def _write(self, name: str) -> None:
        self._check(name)
        self.writes += 1

    @asynccontextmanager
    async def transaction(self):
        self._check('transaction')
        snapshot = copy.deepcopy(
            (self.listings, self.transactions, dict(self.events), self.refunds, self.writes)
        )
        self.open_transactions += 1
        try:
            yield self
        except BaseException:
            listings, transactions, events, refunds, writes = snapshot
            self.listings = listings
            self.transactions = transactions
            self.events = defaultdict(list, events)
            self.refunds = refunds
            self.writes = writes
            raise
        finally:
            self.open_transactions -= 1

    # Users

    def add_user(self, email: str, name: str = 'Test User', cpf: Optional[str] = None) -> UUID:
        user_id = uuid4()
        self.users[user_id] = {'id': user_id, 'email': email, 'name': name, 'cpf': cpf}
        return user_id

    async def get_user(self, user_id, conn=None):
        self._check('get_user')
        user = self.users.get(_uuid(user_id))
        return dict(user) if user else None

    # Listing store

    def add_listing(
        self,
        seller_id: UUID,
        price: str = '250.00',
        shipping_cost: str = '15.00',
        status: ListingStatus = ListingStatus.ACTIVE
    ) -> Listing:
        listing = Listing(
            id=uuid4(),
            seller_id=seller_id,
            title='Vintage denim jacket',
            price=Decimal(price),
            shipping_cost=Decimal(shipping_cost),
            status=status
        )
        self.listings[listing.id] = listing
        return listing.model_copy(deep=True)

    async def get_listing(self, listing_id, conn=None):
        self._check('get_listing')
        listing = self.listings.get(_uuid(listing_id))
        return listing.model_copy(deep=True) if listing else None

    async def update_status(self, listing_id, status, conn=None):
        self._write('update_status')
        listing = self.listings.get(_uuid(listing_id))
        if listing is None:
            return False
        listing.status = ListingStatus(status)
        if listing.status != ListingStatus.RESERVED:
            listing.reserved_by = None
            listing.reserved_until = None
        return True

    async def reserve_listing(self, listing_id, transaction_id, reserved_until=None, conn=None):
        self._write('reserve_listing')
        listing = self.listings.get(_uuid(listing_id))
        if listing is None or listing.status != ListingStatus.ACTIVE:
            return False
        listing.status = ListingStatus.RESERVED
        listing.reserved_by = transaction_id
        listing.reserved_until = reserved_until
        return True

    async def confirm_reservation(self, listing_id, transaction_id, conn=None):
        self._write('confirm_reservation')
        listing = self.listings.get(_uuid(listing_id))
        if listing is None or listing.status != ListingStatus.RESERVED or listing.reserved_by != transaction_id:
            return False
        listing.reserved_until = None
        return True

    async def release_listing(self, listing_id, transaction_id, conn=None):
        self._write('release_listing')
        listing = self.listings.get(_uuid(listing_id))
        if listing is None or listing.status != ListingStatus.RESERVED or listing.reserved_by != transaction_id:
            return False
        listing.status = ListingStatus.ACTIVE
        listing.reserved_by = None
        listing.reserved_until = None
        return True

    async def mark_sold(self, listing_id, conn=None):
        return await self.update_status(listing_id, ListingStatus.SOLD, conn=conn)

    async def find_expired_reservations(self, now, limit=100, conn=None):
        self._check('find_expired_reservations')
        expired = [
            listing.model_copy(deep=True)
            for listing in self.listings.values()
            if listing.status == ListingStatus.RESERVED
            and listing.reserved_until is not None
            and listing.reserved_until < now
        ]
        return sorted(expired, key=lambda listing: listing.reserved_until)[:limit]

    # Transaction repository

    async def insert_transaction(self, record, conn=None):
        self._write('insert_transaction')
        now = datetime.now(timezone.utc)
        transaction = Transaction(**record, created_at=now, updated_at=now)
        self.transactions[transaction.id] = transaction
        return transaction.model_copy(deep=True)

    async def get_transaction(self, transaction_id, conn=None):
        self._check('get_transaction')
        transaction_id = _uuid(transaction_id)
        transaction = self.transactions.get(transaction_id)
        if transaction is None:
            return None
        result = transaction.model_copy(deep=True)
        result.timeline = [event.model_copy(deep=True) for event in self.events[transaction_id]]
        return result

    async def update_transaction(self, transaction_id, fields, expected_status=None, conn=None):
        self._write('update_transaction')
        transaction = self.transactions.get(_uuid(transaction_id))
        if transaction is None:
            return None
        if expected_status and transaction.status not in expected_status:
            return None
        updated = transaction.model_copy(
            update={**fields, 'updated_at': datetime.now(timezone.utc)}
        )
        updated.status = TransactionStatus(updated.status)
        self.transactions[updated.id] = updated
        return updated.model_copy(deep=True)

    async def add_event(self, transaction_id, event, conn=None):
        self._write('add_event')
        self.events[_uuid(transaction_id)].append(event.model_copy(deep=True))

    async def get_events(self, transaction_id, conn=None):
        return [event.model_copy(deep=True) for event in self.events[_uuid(transaction_id)]]

    async def record_refund(self, transaction_id, refund: RefundResult, provider, conn=None):
        self._write('record_refund')
        transaction_id = _uuid(transaction_id)
        if transaction_id in self.refunds:
            return False
        self.refunds[transaction_id] = {
            'transaction_id': transaction_id,
            'refund_id': refund.refund_id,
            'amount': refund.amount,
            'status': refund.status.value,
            'provider': provider,
        }
        return True

    async def get_refund(self, transaction_id, conn=None):
        refund = self.refunds.get(_uuid(transaction_id))
        return dict(refund) if refund else None

    async def list_transactions(self, user_id, role='all', status=None, conn=None):
        user_id = _uuid(user_id)
        results = []
        for transaction in self.transactions.values():
            if role == 'buyer' and transaction.buyer_id != user_id:
                continue
            if role == 'seller' and transaction.seller_id != user_id:
                continue
            if role == 'all' and user_id not in (transaction.buyer_id, transaction.seller_id):
                continue
            if status is not None and transaction.status != status:
                continue
            results.append(await self.get_transaction(transaction.id))
        return sorted(results, key=lambda t: t.created_at, reverse=True)

    async def status_counts(self, seller_id=None, conn=None):
        counts: Dict[str, Dict[str, Any]] = {}
        for transaction in self.transactions.values():
            if seller_id is not None and transaction.seller_id != seller_id:
                continue
            row = counts.setdefault(
                transaction.status.value,
                {'status': transaction.status.value, 'count': 0, 'total_amount': Decimal('0')}
            )
            row['count'] += 1
            row['total_amount'] += transaction.amount
        return list(counts.values())


class FakeConnection:
    """Records queries and answers them from queued results."""

    def __init__(self):
        self.queries: List[tuple] = []
        self.results: List[Any] = []
        self.in_transaction = False

    def queue(self, *results) -> None:
        self.results.extend(results)

    def _next(self, default):
        return self.results.pop(0) if self.results else default

    async def execute(self, query, *args):
        self.queries.append((query, args))
        return self._next('UPDATE 0')

    async def fetchrow(self, query, *args):
        self.queries.append((query, args))
        return self._next(None)

    async def fetch(self, query, *args):
        self.queries.append((query, args))
        return self._next([])

    @asynccontextmanager
    async def transaction(self):
        self.in_transaction = True
        try:
            yield
        finally:
            self.in_transaction = False


class FakePool:
    def __init__(self, conn: Optional[FakeConnection] = None):
        self.conn = conn or FakeConnection()
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.conn


@pytest.fixture
def marketplace():
    return InMemoryMarketplace()


@pytest.fixture
def seller_id(marketplace):
    return marketplace.add_user('seller@example.com', 'Bruna Lima')


@pytest.fixture
def buyer_id(marketplace):
    return marketplace.add_user('buyer@example.com', 'Ana Souza', cpf='123.456.789-09')


@pytest.fixture
def listing(marketplace, seller_id):
    """An active R$250.00 listing with R$15.00 domestic shipping."""
    return marketplace.add_listing(seller_id)


@pytest.fixture
def payment_service():
    return PaymentService(providers=default_providers(latency_ms=0), currency='BRL')


@pytest.fixture
def service(payment_service, marketplace):
    return TransactionService(
        payments=payment_service,
        listings=marketplace,
        repository=marketplace,
        settings=TEST_SETTINGS
    )


@pytest.fixture
def checkout(buyer_id):
    """Build a create_transaction request for a listing."""
    def _checkout(listing, method='credit_card', details=None, buyer=None):
        if details is None:
            details = dict(CARD_DETAILS) if method == 'credit_card' else {}
        return {
            'listing_id': listing.id,
            'buyer_id': buyer or buyer_id,
            'shipping_address': dict(SHIPPING_ADDRESS),
            'payment_method': {'type': method, 'details': details},
        }
    return _checkout


@pytest.fixture
def fake_pool():
    return FakePool()
