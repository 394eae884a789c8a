"""Tests for the transaction service."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from listings import ListingStatus
from payments import PaymentProviderUnavailableError, PaymentService, default_providers
from payments.models import PaymentStatusType, RefundResult
from payments.providers import DECLINED_CARD, PROCESSING_ERROR_CARD
from transactions import (
    BuyerNotFoundError,
    InvalidPaymentMethodError,
    InvalidStatusTransitionError,
    InvalidTransactionStateError,
    InvalidTransactionUpdateError,
    ListingNotFoundError,
    ListingUnavailableError,
    NotTransactionBuyerError,
    PaymentExpiredError,
    RefundFailedError,
    SelfPurchaseError,
    TransactionNotCancellableError,
    TransactionNotFoundError,
    TransactionService,
    TransactionStatus,
)
from transactions.models import TransactionEventType

from .conftest import CARD_DETAILS, TEST_SETTINGS, StoreUnavailable

SHIPPED_UPDATE = {
    'status': 'shipped',
    'tracking_number': 'BR123456789',
    'estimated_delivery': datetime(2030, 1, 10, tzinfo=timezone.utc),
}


def event_types(transaction):
    return [event.type for event in transaction.timeline]


class RecordingPayments(PaymentService):
    """Payment service that counts refund calls and can fail them."""

    def __init__(self, refund_success=True):
        super().__init__(providers=default_providers(latency_ms=0), currency='BRL')
        self.refund_calls = []
        self.refund_success = refund_success

    async def refund_payment(self, provider_hint, transaction_id, amount):
        self.refund_calls.append((provider_hint, transaction_id, amount))
        if not self.refund_success:
            return RefundResult(
                success=False,
                amount=amount,
                status=PaymentStatusType.FAILED,
                error_message='Refund window closed'
            )
        return await super().refund_payment(provider_hint, transaction_id, amount)


class RacingPayments(RecordingPayments):
    """Cancels the transaction while the charge is in flight."""

    def __init__(self, marketplace, refund_success=True):
        super().__init__(refund_success=refund_success)
        self.marketplace = marketplace

    async def process_payment(self, provider_hint, transaction_id, amount, *args, **kwargs):
        result = await super().process_payment(provider_hint, transaction_id, amount, *args, **kwargs)
        self.marketplace.transactions[transaction_id].status = TransactionStatus.CANCELLED
        return result


async def paid_transaction(service, checkout, listing, method='credit_card'):
    created = await service.create_transaction(checkout(listing, method))
    details = CARD_DETAILS if method == 'credit_card' else {}
    outcome = await service.process_payment(created.transaction.id, details)
    assert outcome.success
    return created.transaction


# Creation

@pytest.mark.asyncio
async def test_create_card_transaction(service, marketplace, checkout, listing, buyer_id):
    result = await service.create_transaction(checkout(listing))
    transaction = result.transaction

    assert transaction.status == TransactionStatus.PENDING_PAYMENT
    assert transaction.buyer_id == buyer_id
    assert transaction.seller_id == listing.seller_id
    assert transaction.amount == Decimal('265.00')
    assert transaction.fees.platform_fee == Decimal('12.50')
    assert transaction.fees.payment_fee == Decimal('7.55')
    assert transaction.fees.shipping_fee == Decimal('15.00')
    assert transaction.net_amount == Decimal('244.95')
    assert transaction.shipping_method == 'standard'
    assert event_types(transaction) == [TransactionEventType.TRANSACTION_CREATED]

    assert result.payment_required is True
    assert result.payment_instructions is None

    stored = marketplace.listings[listing.id]
    assert stored.status == ListingStatus.RESERVED
    assert stored.reserved_by == transaction.id
    assert stored.reserved_until is None


@pytest.mark.asyncio
async def test_net_amount_passes_shipping_through(service, checkout, listing):
    result = await service.create_transaction(checkout(listing, 'bank_transfer'))
    transaction = result.transaction
    fees = transaction.fees
    assert transaction.net_amount == transaction.amount - fees.platform_fee - fees.payment_fee
    assert fees.payment_fee == Decimal('3.75')


@pytest.mark.asyncio
async def test_bank_transfer_checkout_needs_no_details(service, checkout, listing):
    result = await service.create_transaction(checkout(listing, 'bank_transfer', details={}))

    assert result.transaction.status == TransactionStatus.PENDING_PAYMENT
    assert result.payment_required is True
    assert result.payment_instructions is None

    outcome = await service.process_payment(result.transaction.id, {})
    assert outcome.success
    assert outcome.payment_id.startswith('stripe_')


@pytest.mark.asyncio
async def test_create_pix_transaction_returns_instructions(service, marketplace, checkout, listing):
    before = datetime.now(timezone.utc)
    result = await service.create_transaction(checkout(listing, 'pix'))
    transaction = result.transaction
    instructions = result.payment_instructions

    assert instructions.type.value == 'pix'
    assert instructions.qr_code == f"pix_qr_{transaction.id}"
    assert instructions.pix_key == 'vangarments@marketplace.com'
    assert instructions.amount == Decimal('265.00')
    assert before + timedelta(minutes=29) < instructions.expires_at <= before + timedelta(minutes=31)
    assert marketplace.listings[listing.id].reserved_until == instructions.expires_at


@pytest.mark.asyncio
async def test_create_rejects_missing_listing(service, marketplace, checkout, listing):
    listing.id = uuid4()
    with pytest.raises(ListingNotFoundError, match='^Listing not found$'):
        await service.create_transaction(checkout(listing))
    assert marketplace.writes == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [ListingStatus.SOLD, ListingStatus.RESERVED, ListingStatus.DRAFT])
async def test_create_rejects_unavailable_listing(service, marketplace, checkout, seller_id, status):
    listing = marketplace.add_listing(seller_id, status=status)
    with pytest.raises(ListingUnavailableError, match='^Listing is not available for purchase$'):
        await service.create_transaction(checkout(listing))
    assert marketplace.writes == 0
    assert marketplace.transactions == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ['pix', 'credit_card', 'bank_transfer'])
async def test_create_rejects_own_listing(service, marketplace, checkout, listing, seller_id, method):
    with pytest.raises(SelfPurchaseError, match='^Cannot purchase your own listing$'):
        await service.create_transaction(checkout(listing, method, buyer=seller_id))
    assert marketplace.writes == 0


@pytest.mark.asyncio
async def test_create_rejects_invalid_payment_method(service, marketplace, checkout, listing):
    with pytest.raises(InvalidPaymentMethodError) as excinfo:
        await service.create_transaction(checkout(listing, 'credit_card', details={}))
    assert 'Card number is required' in excinfo.value.errors
    assert marketplace.writes == 0


@pytest.mark.asyncio
async def test_create_rolls_back_when_reservation_is_lost(service, marketplace, checkout, listing):
    """A buyer who loses the reservation race leaves no transaction behind."""
    original_reserve = marketplace.reserve_listing

    async def reserve_after_rival(listing_id, transaction_id, reserved_until=None, conn=None):
        marketplace.listings[listing_id].status = ListingStatus.RESERVED
        return await original_reserve(listing_id, transaction_id, reserved_until, conn)

    marketplace.reserve_listing = reserve_after_rival

    with pytest.raises(ListingUnavailableError):
        await service.create_transaction(checkout(listing))
    assert marketplace.transactions == {}
    assert dict(marketplace.events) == {}


@pytest.mark.asyncio
async def test_concurrent_buyers_only_one_wins(service, marketplace, checkout, listing):
    rival = marketplace.add_user('rival@example.com')
    results = await asyncio.gather(
        service.create_transaction(checkout(listing)),
        service.create_transaction(checkout(listing, buyer=rival)),
        return_exceptions=True
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], ListingUnavailableError)
    assert len(marketplace.transactions) == 1


@pytest.mark.asyncio
async def test_create_propagates_store_failure(service, marketplace, checkout, listing):
    marketplace.fail_on.add('add_event')
    with pytest.raises(StoreUnavailable):
        await service.create_transaction(checkout(listing))
    assert marketplace.transactions == {}
    assert marketplace.listings[listing.id].status == ListingStatus.ACTIVE


# Payment

@pytest.mark.asyncio
async def test_card_payment_confirms_transaction(service, marketplace, checkout, listing):
    created = await service.create_transaction(checkout(listing))

    outcome = await service.process_payment(created.transaction.id, CARD_DETAILS)

    assert outcome.success
    assert outcome.payment_id.startswith('stripe_')
    transaction = await service.get_transaction(created.transaction.id)
    assert transaction.status == TransactionStatus.PAYMENT_CONFIRMED
    assert transaction.payment_id == outcome.payment_id
    assert event_types(transaction)[-1] == TransactionEventType.PAYMENT_CONFIRMED
    assert marketplace.listings[listing.id].status == ListingStatus.RESERVED


@pytest.mark.asyncio
async def test_pix_purchase_end_to_end(service, marketplace, checkout, listing):
    """R$250 item with R$15 shipping paid by PIX."""
    created = await service.create_transaction(checkout(listing, 'pix'))
    assert created.transaction.amount == Decimal('265.00')
    assert created.payment_instructions.amount == Decimal('265.00')

    outcome = await service.process_payment(created.transaction.id, {})

    assert outcome.success
    assert outcome.payment_id.startswith('pix_')
    transaction = await service.get_transaction(created.transaction.id)
    assert transaction.status == TransactionStatus.PAYMENT_CONFIRMED
    # Paid reservations no longer lapse
    assert marketplace.listings[listing.id].reserved_until is None


@pytest.mark.asyncio
async def test_declined_payment_releases_listing(service, marketplace, checkout, listing):
    created = await service.create_transaction(checkout(listing))

    outcome = await service.process_payment(
        created.transaction.id, {**CARD_DETAILS, 'card_number': DECLINED_CARD}
    )

    assert not outcome.success
    assert outcome.error_message == 'Payment declined by issuer'
    transaction = await service.get_transaction(created.transaction.id)
    assert transaction.status == TransactionStatus.PENDING_PAYMENT
    assert transaction.payment_id is None
    assert event_types(transaction)[-1] == TransactionEventType.PAYMENT_FAILED
    assert transaction.timeline[-1].metadata['error'] == 'Payment declined by issuer'
    assert marketplace.listings[listing.id].status == ListingStatus.ACTIVE


@pytest.mark.asyncio
async def test_retry_after_decline_re_reserves(service, marketplace, checkout, listing):
    created = await service.create_transaction(checkout(listing))
    await service.process_payment(created.transaction.id, {**CARD_DETAILS, 'card_number': DECLINED_CARD})

    outcome = await service.process_payment(created.transaction.id, CARD_DETAILS)

    assert outcome.success
    stored = marketplace.listings[listing.id]
    assert stored.status == ListingStatus.RESERVED
    assert stored.reserved_by == created.transaction.id


@pytest.mark.asyncio
async def test_retry_after_decline_fails_if_listing_taken(service, marketplace, checkout, listing):
    created = await service.create_transaction(checkout(listing))
    await service.process_payment(created.transaction.id, {**CARD_DETAILS, 'card_number': DECLINED_CARD})

    rival = marketplace.add_user('rival@example.com')
    await service.create_transaction(checkout(listing, buyer=rival))

    with pytest.raises(ListingUnavailableError):
        await service.process_payment(created.transaction.id, CARD_DETAILS)


@pytest.mark.asyncio
async def test_provider_outage_keeps_reservation(service, marketplace, checkout, listing):
    created = await service.create_transaction(checkout(listing))

    with pytest.raises(PaymentProviderUnavailableError):
        await service.process_payment(
            created.transaction.id, {**CARD_DETAILS, 'card_number': PROCESSING_ERROR_CARD}
        )

    transaction = await service.get_transaction(created.transaction.id)
    assert transaction.status == TransactionStatus.PENDING_PAYMENT
    assert event_types(transaction) == [TransactionEventType.TRANSACTION_CREATED]
    assert marketplace.listings[listing.id].reserved_by == transaction.id


@pytest.mark.asyncio
async def test_payment_for_missing_transaction(service):
    with pytest.raises(TransactionNotFoundError, match='^Transaction not found$'):
        await service.process_payment(uuid4(), CARD_DETAILS)


@pytest.mark.asyncio
async def test_unparseable_transaction_id_is_not_found(service):
    assert await service.get_transaction('txn-42') is None
    with pytest.raises(TransactionNotFoundError, match='^Transaction not found$'):
        await service.process_payment('txn-42', CARD_DETAILS)
    with pytest.raises(TransactionNotFoundError):
        await service.update_transaction('txn-42', {'notes': 'Fragile'})
    with pytest.raises(TransactionNotFoundError):
        await service.confirm_delivery('txn-42', uuid4())
    with pytest.raises(TransactionNotFoundError):
        await service.cancel_transaction('txn-42', 'x')


@pytest.mark.asyncio
async def test_charge_refunded_when_transaction_moves_on(marketplace, checkout, listing):
    payments = RacingPayments(marketplace)
    service = TransactionService(
        payments=payments, listings=marketplace, repository=marketplace, settings=TEST_SETTINGS
    )
    created = await service.create_transaction(checkout(listing))

    with pytest.raises(InvalidTransactionStateError, match='payable state'):
        await service.process_payment(created.transaction.id, CARD_DETAILS)

    assert payments.refund_calls == [('stripe', created.transaction.id, Decimal('265.00'))]
    assert marketplace.refunds[created.transaction.id]['provider'] == 'stripe'
    transaction = await service.get_transaction(created.transaction.id)
    assert event_types(transaction)[-1] == TransactionEventType.REFUND_ISSUED
    assert transaction.timeline[-1].metadata['payment_id'].startswith('stripe_')


@pytest.mark.asyncio
async def test_failed_compensating_refund_is_reported(marketplace, checkout, listing):
    payments = RacingPayments(marketplace, refund_success=False)
    service = TransactionService(
        payments=payments, listings=marketplace, repository=marketplace, settings=TEST_SETTINGS
    )
    created = await service.create_transaction(checkout(listing))

    with pytest.raises(RefundFailedError, match='^Failed to process refund$'):
        await service.process_payment(created.transaction.id, CARD_DETAILS)

    assert marketplace.refunds == {}
    transaction = await service.get_transaction(created.transaction.id)
    assert TransactionEventType.REFUND_ISSUED not in event_types(transaction)


@pytest.mark.asyncio
async def test_paying_twice_is_rejected(service, checkout, listing):
    transaction = await paid_transaction(service, checkout, listing)
    with pytest.raises(InvalidTransactionStateError, match='payable state'):
        await service.process_payment(transaction.id, CARD_DETAILS)


@pytest.mark.asyncio
async def test_payment_requires_buyer_account(service, marketplace, checkout, listing, buyer_id):
    created = await service.create_transaction(checkout(listing))
    del marketplace.users[buyer_id]
    with pytest.raises(BuyerNotFoundError, match='^Buyer not found$'):
        await service.process_payment(created.transaction.id, CARD_DETAILS)


@pytest.mark.asyncio
async def test_lapsed_pix_payment_is_expired(service, marketplace, checkout, listing):
    created = await service.create_transaction(checkout(listing, 'pix'))
    marketplace.listings[listing.id].reserved_until = datetime.now(timezone.utc) - timedelta(minutes=1)

    with pytest.raises(PaymentExpiredError):
        await service.process_payment(created.transaction.id, {})

    transaction = await service.get_transaction(created.transaction.id)
    assert transaction.status == TransactionStatus.CANCELLED
    assert marketplace.listings[listing.id].status == ListingStatus.ACTIVE


# Updates

@pytest.mark.asyncio
async def test_mark_shipped(service, checkout, listing):
    transaction = await paid_transaction(service, checkout, listing)

    updated = await service.update_transaction(transaction.id, SHIPPED_UPDATE)

    assert updated.status == TransactionStatus.SHIPPED
    assert updated.tracking_number == 'BR123456789'
    assert updated.estimated_delivery == SHIPPED_UPDATE['estimated_delivery']
    assert event_types(updated)[-1] == TransactionEventType.SHIPPED
    assert updated.amount == transaction.amount
    assert updated.fees == transaction.fees


@pytest.mark.asyncio
async def test_shipped_requires_tracking_details(service, checkout, listing):
    transaction = await paid_transaction(service, checkout, listing)
    with pytest.raises(InvalidTransactionUpdateError, match='Tracking number and estimated delivery'):
        await service.update_transaction(transaction.id, {'status': 'shipped', 'tracking_number': 'BR1'})


@pytest.mark.asyncio
async def test_empty_update_is_rejected(service, checkout, listing):
    created = await service.create_transaction(checkout(listing))
    with pytest.raises(InvalidTransactionUpdateError, match='^No fields to update$'):
        await service.update_transaction(created.transaction.id, {})


@pytest.mark.asyncio
async def test_update_cannot_touch_money(service, checkout, listing):
    created = await service.create_transaction(checkout(listing))
    with pytest.raises(InvalidTransactionUpdateError):
        await service.update_transaction(created.transaction.id, {'amount': '1.00'})


@pytest.mark.asyncio
async def test_shipping_before_payment_is_rejected(service, checkout, listing):
    created = await service.create_transaction(checkout(listing))
    with pytest.raises(InvalidStatusTransitionError):
        await service.update_transaction(created.transaction.id, SHIPPED_UPDATE)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ['payment_confirmed', 'delivered', 'completed', 'cancelled'])
async def test_dedicated_statuses_cannot_be_set_directly(service, checkout, listing, status):
    transaction = await paid_transaction(service, checkout, listing)
    await service.update_transaction(transaction.id, SHIPPED_UPDATE)
    with pytest.raises(InvalidStatusTransitionError):
        await service.update_transaction(transaction.id, {'status': status})


@pytest.mark.asyncio
async def test_update_notes_keeps_status(service, checkout, listing):
    created = await service.create_transaction(checkout(listing))
    updated = await service.update_transaction(created.transaction.id, {'notes': 'Leave with doorman'})
    assert updated.notes == 'Leave with doorman'
    assert updated.status == TransactionStatus.PENDING_PAYMENT
    assert event_types(updated)[-1] == TransactionEventType.STATUS_UPDATED


@pytest.mark.asyncio
async def test_update_missing_transaction(service):
    with pytest.raises(TransactionNotFoundError):
        await service.update_transaction(uuid4(), {'notes': 'x'})


# Delivery

@pytest.mark.asyncio
async def test_confirm_delivery_completes_and_sells(service, marketplace, checkout, listing, buyer_id):
    transaction = await paid_transaction(service, checkout, listing)
    await service.update_transaction(transaction.id, SHIPPED_UPDATE)

    completed = await service.confirm_delivery(transaction.id, buyer_id)

    assert completed.status == TransactionStatus.COMPLETED
    assert completed.actual_delivery is not None
    assert event_types(completed)[-2:] == [
        TransactionEventType.DELIVERED,
        TransactionEventType.FUNDS_RELEASED,
    ]
    assert completed.timeline[-1].metadata['net_amount'] == str(transaction.net_amount)
    stored = marketplace.listings[listing.id]
    assert stored.status == ListingStatus.SOLD
    assert stored.reserved_by is None


@pytest.mark.asyncio
async def test_only_buyer_confirms_delivery(service, marketplace, checkout, listing, seller_id):
    transaction = await paid_transaction(service, checkout, listing)
    shipped = await service.update_transaction(transaction.id, SHIPPED_UPDATE)
    writes = marketplace.writes

    for caller_id in (seller_id, uuid4(), 'seller-42'):
        with pytest.raises(NotTransactionBuyerError, match='^Only the buyer can confirm delivery$'):
            await service.confirm_delivery(transaction.id, caller_id)

    assert marketplace.writes == writes
    unchanged = await service.get_transaction(transaction.id)
    assert unchanged.status == TransactionStatus.SHIPPED
    assert event_types(unchanged) == event_types(shipped)
    assert marketplace.listings[listing.id].status == ListingStatus.RESERVED


@pytest.mark.asyncio
async def test_delivery_requires_shipment(service, checkout, listing, buyer_id):
    transaction = await paid_transaction(service, checkout, listing)
    with pytest.raises(InvalidTransactionStateError, match='must be shipped'):
        await service.confirm_delivery(transaction.id, buyer_id)


@pytest.mark.asyncio
async def test_delivery_failure_commits_nothing(service, marketplace, checkout, listing, buyer_id):
    transaction = await paid_transaction(service, checkout, listing)
    await service.update_transaction(transaction.id, SHIPPED_UPDATE)
    marketplace.fail_on.add('update_status')

    with pytest.raises(StoreUnavailable):
        await service.confirm_delivery(transaction.id, buyer_id)

    marketplace.fail_on.clear()
    stored = await service.get_transaction(transaction.id)
    assert stored.status == TransactionStatus.SHIPPED
    assert stored.actual_delivery is None
    assert marketplace.listings[listing.id].status == ListingStatus.RESERVED


# Cancellation

@pytest.mark.asyncio
async def test_cancel_unpaid_transaction(marketplace, checkout, listing):
    payments = RecordingPayments()
    service = TransactionService(payments, marketplace, marketplace, TEST_SETTINGS)
    created = await service.create_transaction(checkout(listing))

    cancelled = await service.cancel_transaction(created.transaction.id, 'Changed my mind')

    assert cancelled.status == TransactionStatus.CANCELLED
    assert payments.refund_calls == []
    assert event_types(cancelled)[-1] == TransactionEventType.TRANSACTION_CANCELLED
    assert cancelled.timeline[-1].metadata == {'reason': 'Changed my mind'}
    assert marketplace.listings[listing.id].status == ListingStatus.ACTIVE


@pytest.mark.asyncio
async def test_cancel_paid_transaction_refunds_once(marketplace, checkout, listing):
    payments = RecordingPayments()
    service = TransactionService(payments, marketplace, marketplace, TEST_SETTINGS)
    transaction = await paid_transaction(service, checkout, listing)

    cancelled = await service.cancel_transaction(transaction.id, 'Out of stock')

    assert payments.refund_calls == [('stripe', transaction.id, Decimal('265.00'))]
    assert cancelled.status == TransactionStatus.CANCELLED
    assert TransactionEventType.REFUND_ISSUED in event_types(cancelled)
    assert marketplace.refunds[transaction.id]['amount'] == Decimal('265.00')
    assert marketplace.listings[listing.id].status == ListingStatus.ACTIVE

    with pytest.raises(TransactionNotCancellableError):
        await service.cancel_transaction(transaction.id, 'Again')
    assert len(payments.refund_calls) == 1


@pytest.mark.asyncio
async def test_failed_refund_changes_nothing(marketplace, checkout, listing):
    payments = RecordingPayments(refund_success=False)
    service = TransactionService(payments, marketplace, marketplace, TEST_SETTINGS)
    transaction = await paid_transaction(service, checkout, listing)

    with pytest.raises(RefundFailedError, match='^Failed to process refund$'):
        await service.cancel_transaction(transaction.id, 'Out of stock')

    stored = await service.get_transaction(transaction.id)
    assert stored.status == TransactionStatus.PAYMENT_CONFIRMED
    assert marketplace.listings[listing.id].status == ListingStatus.RESERVED
    assert marketplace.refunds == {}


@pytest.mark.asyncio
async def test_cancel_retry_after_store_failure_does_not_refund_twice(marketplace, checkout, listing):
    payments = RecordingPayments()
    service = TransactionService(payments, marketplace, marketplace, TEST_SETTINGS)
    transaction = await paid_transaction(service, checkout, listing)

    marketplace.fail_on.add('release_listing')
    with pytest.raises(StoreUnavailable):
        await service.cancel_transaction(transaction.id, 'Out of stock')
    marketplace.fail_on.clear()

    first_refund = payments.refund_calls[0]
    cancelled = await service.cancel_transaction(transaction.id, 'Out of stock')

    assert cancelled.status == TransactionStatus.CANCELLED
    # The provider deduplicates the retried refund by its idempotency key
    assert all(call == first_refund for call in payments.refund_calls)
    assert len(marketplace.refunds) == 1


@pytest.mark.asyncio
async def test_cannot_cancel_after_shipping(service, checkout, listing):
    transaction = await paid_transaction(service, checkout, listing)
    await service.update_transaction(transaction.id, SHIPPED_UPDATE)
    with pytest.raises(TransactionNotCancellableError, match='^Transaction cannot be cancelled in current status$'):
        await service.cancel_transaction(transaction.id, 'Too late')


@pytest.mark.asyncio
async def test_cannot_cancel_completed_transaction(service, marketplace, checkout, listing, buyer_id):
    transaction = await paid_transaction(service, checkout, listing)
    await service.update_transaction(transaction.id, SHIPPED_UPDATE)
    completed = await service.confirm_delivery(transaction.id, buyer_id)

    with pytest.raises(TransactionNotCancellableError, match='^Transaction cannot be cancelled in current status$'):
        await service.cancel_transaction(transaction.id, 'Changed my mind')

    unchanged = await service.get_transaction(transaction.id)
    assert unchanged.status == TransactionStatus.COMPLETED
    assert event_types(unchanged) == event_types(completed)
    assert marketplace.refunds == {}
    assert marketplace.listings[listing.id].status == ListingStatus.SOLD


@pytest.mark.asyncio
async def test_cancel_missing_transaction(service):
    with pytest.raises(TransactionNotFoundError):
        await service.cancel_transaction(uuid4(), 'x')


# Listings and stats

@pytest.mark.asyncio
async def test_user_transactions_by_role(service, marketplace, checkout, listing, buyer_id, seller_id):
    created = await service.create_transaction(checkout(listing))

    as_buyer = await service.get_user_transactions(buyer_id, role='buyer')
    as_seller = await service.get_user_transactions(seller_id, role='seller')
    wrong_role = await service.get_user_transactions(buyer_id, role='seller')
    filtered = await service.get_user_transactions(buyer_id, status='completed')

    assert [t.id for t in as_buyer] == [created.transaction.id]
    assert [t.id for t in as_seller] == [created.transaction.id]
    assert wrong_role == []
    assert filtered == []


@pytest.mark.asyncio
async def test_transaction_stats(service, marketplace, checkout, seller_id, buyer_id):
    # One completed, one cancelled, one pending
    first = marketplace.add_listing(seller_id, price='100.00', shipping_cost='0')
    transaction = await paid_transaction(service, checkout, first)
    await service.update_transaction(transaction.id, SHIPPED_UPDATE)
    await service.confirm_delivery(transaction.id, buyer_id)

    second = marketplace.add_listing(seller_id, price='50.00', shipping_cost='0')
    cancelled = await service.create_transaction(checkout(second))
    await service.cancel_transaction(cancelled.transaction.id, 'x')

    third = marketplace.add_listing(seller_id, price='70.00', shipping_cost='0')
    await service.create_transaction(checkout(third))

    stats = await service.get_transaction_stats(seller_id)

    assert stats.total_transactions == 3
    assert stats.total_revenue == Decimal('100.00')
    assert stats.average_order_value == Decimal('100.00')
    assert stats.completion_rate == pytest.approx(0.3333)
    assert stats.status_breakdown == {
        'pending_payment': 1,
        'payment_confirmed': 0,
        'shipped': 0,
        'delivered': 0,
        'completed': 1,
        'cancelled': 1,
    }


@pytest.mark.asyncio
async def test_stats_without_transactions(service):
    stats = await service.get_transaction_stats()
    assert stats.total_transactions == 0
    assert stats.total_revenue == Decimal('0.00')
    assert stats.average_order_value == Decimal('0.00')
    assert stats.completion_rate == 0.0


# Reservation expiry

@pytest.mark.asyncio
async def test_expire_stale_reservations(service, marketplace, checkout, listing, seller_id):
    unpaid = await service.create_transaction(checkout(listing, 'pix'))
    paid_listing = marketplace.add_listing(seller_id)
    paid = await paid_transaction(service, checkout, paid_listing, method='pix')
    card_listing = marketplace.add_listing(seller_id)
    await service.create_transaction(checkout(card_listing))

    later = datetime.now(timezone.utc) + timedelta(minutes=31)
    expired = await service.expire_stale_reservations(now=later)

    assert expired == 1
    transaction = await service.get_transaction(unpaid.transaction.id)
    assert transaction.status == TransactionStatus.CANCELLED
    assert event_types(transaction)[-1] == TransactionEventType.RESERVATION_EXPIRED
    assert marketplace.listings[listing.id].status == ListingStatus.ACTIVE

    assert (await service.get_transaction(paid.id)).status == TransactionStatus.PAYMENT_CONFIRMED
    assert marketplace.listings[paid_listing.id].status == ListingStatus.RESERVED
    assert marketplace.listings[card_listing.id].status == ListingStatus.RESERVED


@pytest.mark.asyncio
async def test_expiry_ignores_fresh_reservations(service, marketplace, checkout, listing):
    await service.create_transaction(checkout(listing, 'pix'))
    assert await service.expire_stale_reservations() == 0
    assert marketplace.listings[listing.id].status == ListingStatus.RESERVED


@pytest.mark.asyncio
async def test_expiry_releases_orphaned_reservation(service, marketplace, seller_id):
    listing = marketplace.add_listing(seller_id, status=ListingStatus.RESERVED)
    marketplace.listings[listing.id].reserved_by = uuid4()
    marketplace.listings[listing.id].reserved_until = datetime.now(timezone.utc) - timedelta(hours=1)

    assert await service.expire_stale_reservations() == 0
    assert marketplace.listings[listing.id].status == ListingStatus.ACTIVE
