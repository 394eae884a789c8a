"""Transactions module for marketplace purchases.

This module drives a purchase from checkout to payout:

    pending_payment -> payment_confirmed -> shipped -> delivered -> completed
    pending_payment | payment_confirmed -> cancelled

It reserves the listing for the buyer, charges through the payment service,
records every step on the transaction's timeline and, at the end, marks the
listing sold or puts it back on sale. Writes that belong together run in one
database transaction.
"""
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import UUID, uuid4

from pydantic import ValidationError

from config import settings_conf
from listings import Listing, ListingManager, ListingStatus
from payments import PaymentService
from payments.fees import to_money
from payments.models import PaymentMethodType
from .exceptions import (
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
    TransactionError,
    TransactionNotCancellableError,
    TransactionNotFoundError,
)
from .models import (
    ALLOWED_TRANSITIONS,
    CANCELLABLE_STATUSES,
    DEDICATED_STATUSES,
    TERMINAL_STATUSES,
    CreateTransactionRequest,
    CreateTransactionResult,
    PaymentInstructions,
    PaymentOutcome,
    Transaction,
    TransactionEvent,
    TransactionEventType,
    TransactionStats,
    TransactionStatus,
    TransactionUpdate,
    can_transition,
)
from .ports import ListingStore, TransactionStore
from .repository import TransactionRepository

logger = logging.getLogger(__name__)

TransactionId = Union[str, UUID]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(value: TransactionId) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _event(
    event_type: TransactionEventType,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
    timestamp: Optional[datetime] = None
) -> TransactionEvent:
    return TransactionEvent(
        type=event_type,
        description=description,
        timestamp=timestamp or utcnow(),
        metadata=metadata or {}
    )


class TransactionService:
    """Orchestrates the purchase lifecycle of marketplace listings."""

    def __init__(
        self,
        payments: Optional[PaymentService] = None,
        listings: Optional[ListingStore] = None,
        repository: Optional[TransactionStore] = None,
        settings: Optional[Mapping[str, Any]] = None
    ) -> None:
        """Initialize the transaction service.

        Args:
            payments: Payment adapter. Defaults to the sandbox providers.
            listings: Listing store. Defaults to a pooled ListingManager.
            repository: Transaction store. Defaults to a pooled TransactionRepository.
            settings: Settings mapping. Defaults to settings.conf.
        """
        settings = settings if settings is not None else settings_conf
        self.payments = payments if payments is not None else PaymentService()
        self.listings = listings if listings is not None else ListingManager()
        self.repository = repository if repository is not None else TransactionRepository()
        self.currency = settings['currency']
        self.pix_key = settings['pix_key']
        self.pix_expiration = timedelta(minutes=int(settings['pix_expiration_minutes']))

    def _reservation_deadline(self, method: PaymentMethodType, now: datetime) -> Optional[datetime]:
        """Unpaid PIX holds lapse with their instructions; others don't expire."""
        if method == PaymentMethodType.PIX:
            return now + self.pix_expiration
        return None

    async def _require_transaction(self, transaction_id: TransactionId) -> Transaction:
        transaction = await self.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError()
        return transaction

    async def get_transaction(self, transaction_id: TransactionId) -> Optional[Transaction]:
        """Get a transaction with its timeline, or None if not found."""
        try:
            transaction_id = _as_uuid(transaction_id)
        except ValueError:
            # Not a UUID, so no such row
            return None
        return await self.repository.get_transaction(transaction_id)

    async def get_user_transactions(
        self,
        user_id: TransactionId,
        role: str = 'all',
        status: Optional[Union[TransactionStatus, str]] = None
    ) -> List[Transaction]:
        """Get the transactions a user bought or sold, newest first."""
        if status is not None:
            status = TransactionStatus(status)
        return await self.repository.list_transactions(_as_uuid(user_id), role=role, status=status)

    async def create_transaction(
        self,
        request: Union[CreateTransactionRequest, Mapping[str, Any]]
    ) -> CreateTransactionResult:
        """Open a purchase of a listing.

        Checks the listing and payment method, computes fees, then inserts
        the transaction and reserves the listing in one database transaction.

        Args:
            request: Listing, buyer, shipping address and payment method

        Returns:
            The new transaction, whether payment is still due and, for PIX,
            the payment instructions

        Raises:
            ListingNotFoundError: If the listing doesn't exist
            ListingUnavailableError: If the listing isn't active or another
                buyer reserved it first
            SelfPurchaseError: If the buyer is the seller
            InvalidPaymentMethodError: If the payment method payload is invalid
        """
        if not isinstance(request, CreateTransactionRequest):
            request = CreateTransactionRequest.model_validate(request)

        listing: Optional[Listing] = await self.listings.get_listing(request.listing_id)
        if listing is None:
            raise ListingNotFoundError()
        if listing.status != ListingStatus.ACTIVE:
            raise ListingUnavailableError()
        if listing.seller_id == request.buyer_id:
            raise SelfPurchaseError()

        validation = self.payments.validate_payment_method(request.payment_method)
        if not validation.valid:
            raise InvalidPaymentMethodError(validation.errors)

        method = request.payment_method.type
        fees = self.payments.calculate_fees(listing.price, method)
        shipping_fee = to_money(listing.shipping_cost)
        amount = to_money(listing.price) + shipping_fee
        net_amount = amount - fees.platform_fee - fees.payment_fee

        transaction_id = uuid4()
        now = utcnow()
        reserved_until = self._reservation_deadline(method, now)

        record = {
            'id': transaction_id,
            'listing_id': listing.id,
            'buyer_id': request.buyer_id,
            'seller_id': listing.seller_id,
            'amount': amount,
            'currency': listing.currency or self.currency,
            'fees': {
                'platform_fee': str(fees.platform_fee),
                'payment_fee': str(fees.payment_fee),
                'shipping_fee': str(shipping_fee)
            },
            'net_amount': net_amount,
            'status': TransactionStatus.PENDING_PAYMENT,
            'payment_method': method,
            'shipping_address': request.shipping_address.model_dump(mode='json', exclude_none=True),
            'shipping_method': request.shipping_method,
            'notes': request.notes
        }
        created = _event(
            TransactionEventType.TRANSACTION_CREATED,
            'Transaction created',
            {'amount': str(amount), 'payment_method': method.value},
            timestamp=now
        )

        async with self.repository.transaction() as conn:
            transaction = await self.repository.insert_transaction(record, conn=conn)
            await self.repository.add_event(transaction.id, created, conn=conn)
            reserved = await self.listings.reserve_listing(
                listing.id, transaction.id, reserved_until=reserved_until, conn=conn
            )
            if not reserved:
                # Lost the listing to a concurrent buyer; roll back the insert
                raise ListingUnavailableError()

        transaction.timeline = [created]
        logger.info(
            f"Created transaction {transaction.id} for listing {listing.id}: "
            f"{amount} {transaction.currency} via {method.value}"
        )

        instructions = None
        if method == PaymentMethodType.PIX:
            instructions = PaymentInstructions(
                qr_code=f"pix_qr_{transaction.id}",
                pix_key=self.pix_key,
                amount=amount,
                expires_at=reserved_until
            )

        return CreateTransactionResult(
            transaction=transaction,
            payment_required=transaction.status == TransactionStatus.PENDING_PAYMENT,
            payment_instructions=instructions
        )

    async def process_payment(
        self,
        transaction_id: TransactionId,
        payment_details: Optional[Dict[str, Any]] = None
    ) -> PaymentOutcome:
        """Charge the buyer for a pending transaction.

        A decline is not an error: the listing goes back on sale, a
        ``payment_failed`` event is recorded and the transaction stays
        ``pending_payment`` so the buyer can retry. Provider and database
        failures propagate and leave the reservation in place.

        Raises:
            TransactionNotFoundError: If the transaction doesn't exist
            InvalidTransactionStateError: If it isn't awaiting payment
            PaymentExpiredError: If its PIX instructions lapsed
            BuyerNotFoundError: If the buyer account is gone
            ListingUnavailableError: If a retry finds the listing taken
        """
        transaction = await self._require_transaction(transaction_id)
        if transaction.status != TransactionStatus.PENDING_PAYMENT:
            raise InvalidTransactionStateError('Transaction is not in a payable state')

        buyer = await self.repository.get_user(transaction.buyer_id)
        if buyer is None:
            raise BuyerNotFoundError()

        await self._hold_listing_for_payment(transaction)

        customer = {
            'id': str(buyer['id']),
            'email': buyer.get('email'),
            'name': buyer.get('name'),
            'document': buyer.get('cpf')
        }
        metadata = {
            'transaction_id': str(transaction.id),
            'listing_id': str(transaction.listing_id),
            'seller_id': str(transaction.seller_id)
        }

        result = await self.payments.process_payment(
            transaction.payment_method,
            transaction.id,
            transaction.amount,
            payment_details or {},
            customer=customer,
            metadata=metadata
        )

        if not result.success:
            error_message = result.error_message or 'Payment processing failed'
            async with self.repository.transaction() as conn:
                await self.listings.release_listing(transaction.listing_id, transaction.id, conn=conn)
                await self.repository.add_event(
                    transaction.id,
                    _event(
                        TransactionEventType.PAYMENT_FAILED,
                        'Payment failed',
                        {'error': error_message, 'provider': result.provider}
                    ),
                    conn=conn
                )
            logger.warning(f"Payment declined for transaction {transaction.id}: {error_message}")
            return PaymentOutcome(success=False, error_message=error_message)

        async with self.repository.transaction() as conn:
            confirmed = await self.repository.update_transaction(
                transaction.id,
                {'status': TransactionStatus.PAYMENT_CONFIRMED, 'payment_id': result.payment_id},
                expected_status=[TransactionStatus.PENDING_PAYMENT],
                conn=conn
            )
            if confirmed is not None:
                await self.listings.confirm_reservation(transaction.listing_id, transaction.id, conn=conn)
                await self.repository.add_event(
                    transaction.id,
                    _event(
                        TransactionEventType.PAYMENT_CONFIRMED,
                        'Payment confirmed',
                        {
                            'payment_id': result.payment_id,
                            'provider': result.provider,
                            'transaction_fee': str(result.transaction_fee)
                        }
                    ),
                    conn=conn
                )

        if confirmed is None:
            # The transaction moved on while the charge was in flight
            logger.error(
                f"Transaction {transaction.id} left pending_payment during charge "
                f"{result.payment_id}; refunding"
            )
            refund = await self.payments.refund_payment(result.provider, transaction.id, transaction.amount)
            if not refund.success:
                logger.error(
                    f"Refund of charge {result.payment_id} failed for transaction "
                    f"{transaction.id}: {refund.error_message}"
                )
                raise RefundFailedError()
            async with self.repository.transaction() as conn:
                await self.repository.record_refund(transaction.id, refund, result.provider, conn=conn)
                await self.repository.add_event(
                    transaction.id,
                    _event(
                        TransactionEventType.REFUND_ISSUED,
                        'Payment refunded',
                        {
                            'refund_id': refund.refund_id,
                            'amount': str(refund.amount),
                            'payment_id': result.payment_id
                        }
                    ),
                    conn=conn
                )
            raise InvalidTransactionStateError('Transaction is not in a payable state')

        logger.info(f"Payment {result.payment_id} confirmed for transaction {transaction.id}")
        return PaymentOutcome(success=True, payment_id=result.payment_id)

    async def _hold_listing_for_payment(self, transaction: Transaction) -> None:
        """Make sure the transaction holds its listing before charging.

        Re-reserves a listing released by an earlier decline and expires the
        transaction if its PIX hold has lapsed.
        """
        listing = await self.listings.get_listing(transaction.listing_id)
        now = utcnow()

        if listing is not None and listing.reserved_by == transaction.id:
            if listing.reserved_until is not None and listing.reserved_until <= now:
                await self._expire(transaction, now)
                raise PaymentExpiredError()
            return

        reserved = await self.listings.reserve_listing(
            transaction.listing_id,
            transaction.id,
            reserved_until=self._reservation_deadline(transaction.payment_method, now)
        )
        if not reserved:
            raise ListingUnavailableError()
        logger.info(f"Re-reserved listing {transaction.listing_id} for transaction {transaction.id}")

    async def update_transaction(
        self,
        transaction_id: TransactionId,
        updates: Union[TransactionUpdate, Mapping[str, Any]]
    ) -> Transaction:
        """Update shipping details or move a transaction to ``shipped``.

        Statuses with their own operation (payment, delivery, cancellation)
        can't be set here.

        Raises:
            InvalidTransactionUpdateError: If there is nothing to update, the
                payload has unknown fields, or ``shipped`` lacks tracking data
            TransactionNotFoundError: If the transaction doesn't exist
            InvalidStatusTransitionError: If the status change isn't allowed
        """
        if not isinstance(updates, TransactionUpdate):
            try:
                updates = TransactionUpdate.model_validate(updates)
            except ValidationError as e:
                raise InvalidTransactionUpdateError(f"Invalid update: {e.errors()[0]['msg']}")

        fields = updates.model_dump(exclude_none=True)
        if not fields:
            raise InvalidTransactionUpdateError('No fields to update')

        transaction = await self._require_transaction(transaction_id)
        current = transaction.status
        if current in TERMINAL_STATUSES:
            raise InvalidStatusTransitionError(
                f"Transaction is {current.value} and can no longer be updated"
            )

        target = fields.get('status')
        if target == current:
            del fields['status']
            target = None

        if target is not None:
            if target in DEDICATED_STATUSES:
                raise InvalidStatusTransitionError(
                    f"Status {target.value} can only be set by its dedicated operation"
                )
            if not can_transition(current, target):
                raise InvalidStatusTransitionError(
                    f"Cannot change transaction status from {current.value} to {target.value}"
                )
            if target == TransactionStatus.SHIPPED:
                tracking = fields.get('tracking_number') or transaction.tracking_number
                estimated = fields.get('estimated_delivery') or transaction.estimated_delivery
                if not tracking or not estimated:
                    raise InvalidTransactionUpdateError(
                        'Tracking number and estimated delivery are required to mark as shipped'
                    )

        if not fields:
            raise InvalidTransactionUpdateError('No fields to update')

        metadata = updates.model_dump(mode='json', exclude_none=True)
        if target == TransactionStatus.SHIPPED:
            event = _event(TransactionEventType.SHIPPED, 'Item shipped', metadata)
        elif target is not None:
            event = _event(TransactionEventType.STATUS_UPDATED, f"Status updated to {target.value}", metadata)
        else:
            event = _event(TransactionEventType.STATUS_UPDATED, 'Transaction details updated', metadata)

        async with self.repository.transaction() as conn:
            updated = await self.repository.update_transaction(
                transaction.id, fields, expected_status=[current], conn=conn
            )
            if updated is None:
                raise InvalidStatusTransitionError(
                    f"Transaction is no longer {current.value}"
                )
            await self.repository.add_event(transaction.id, event, conn=conn)

        logger.info(f"Updated transaction {transaction.id}: {', '.join(sorted(fields))}")
        return await self._require_transaction(transaction.id)

    async def confirm_delivery(
        self,
        transaction_id: TransactionId,
        caller_id: TransactionId
    ) -> Transaction:
        """Buyer confirms receipt; the seller's funds are released.

        Marks the transaction delivered then completed and the listing sold,
        all in one database transaction.

        Raises:
            TransactionNotFoundError: If the transaction doesn't exist
            NotTransactionBuyerError: If the caller isn't the buyer
            InvalidTransactionStateError: If it hasn't shipped
        """
        transaction = await self._require_transaction(transaction_id)
        if str(transaction.buyer_id) != str(caller_id):
            raise NotTransactionBuyerError()
        if transaction.status != TransactionStatus.SHIPPED:
            raise InvalidTransactionStateError(
                'Transaction must be shipped before delivery confirmation'
            )

        delivered_at = utcnow()
        async with self.repository.transaction() as conn:
            delivered = await self.repository.update_transaction(
                transaction.id,
                {'status': TransactionStatus.DELIVERED, 'actual_delivery': delivered_at},
                expected_status=[TransactionStatus.SHIPPED],
                conn=conn
            )
            if delivered is None:
                raise InvalidTransactionStateError(
                    'Transaction must be shipped before delivery confirmation'
                )
            await self.repository.add_event(
                transaction.id,
                _event(TransactionEventType.DELIVERED, 'Delivery confirmed by buyer', timestamp=delivered_at),
                conn=conn
            )
            await self.repository.update_transaction(
                transaction.id,
                {'status': TransactionStatus.COMPLETED},
                expected_status=[TransactionStatus.DELIVERED],
                conn=conn
            )
            await self.repository.add_event(
                transaction.id,
                _event(
                    TransactionEventType.FUNDS_RELEASED,
                    'Funds released to seller',
                    {'net_amount': str(transaction.net_amount)}
                ),
                conn=conn
            )
            await self.listings.mark_sold(transaction.listing_id, conn=conn)

        logger.info(
            f"Transaction {transaction.id} completed; released {transaction.net_amount} "
            f"to seller {transaction.seller_id}"
        )
        return await self._require_transaction(transaction.id)

    async def cancel_transaction(
        self,
        transaction_id: TransactionId,
        reason: str
    ) -> Transaction:
        """Cancel an unshipped transaction, refunding any captured payment.

        The refund happens at most once per transaction. If it fails nothing
        changes and the cancellation can be retried.

        Raises:
            TransactionNotFoundError: If the transaction doesn't exist
            TransactionNotCancellableError: If it has shipped or ended
            RefundFailedError: If the provider rejects the refund
        """
        transaction = await self._require_transaction(transaction_id)
        if transaction.status not in CANCELLABLE_STATUSES:
            raise TransactionNotCancellableError()

        refund = None
        provider = None
        if transaction.payment_id:
            if await self.repository.get_refund(transaction.id) is None:
                provider = self.payments.provider_for(transaction.payment_method)
                refund = await self.payments.refund_payment(provider, transaction.id, transaction.amount)
                if not refund.success:
                    logger.error(
                        f"Refund failed for transaction {transaction.id}: {refund.error_message}"
                    )
                    raise RefundFailedError()
            else:
                logger.info(f"Transaction {transaction.id} already refunded")

        async with self.repository.transaction() as conn:
            if refund is not None:
                await self.repository.record_refund(transaction.id, refund, provider, conn=conn)
                await self.repository.add_event(
                    transaction.id,
                    _event(
                        TransactionEventType.REFUND_ISSUED,
                        'Payment refunded',
                        {'refund_id': refund.refund_id, 'amount': str(refund.amount)}
                    ),
                    conn=conn
                )
            cancelled = await self.repository.update_transaction(
                transaction.id,
                {'status': TransactionStatus.CANCELLED},
                expected_status=list(CANCELLABLE_STATUSES),
                conn=conn
            )
            if cancelled is None:
                raise TransactionNotCancellableError()
            await self.listings.release_listing(transaction.listing_id, transaction.id, conn=conn)
            await self.repository.add_event(
                transaction.id,
                _event(TransactionEventType.TRANSACTION_CANCELLED, 'Transaction cancelled', {'reason': reason}),
                conn=conn
            )

        logger.info(f"Cancelled transaction {transaction.id}: {reason}")
        return await self._require_transaction(transaction.id)

    async def _expire(self, transaction: Transaction, now: datetime) -> bool:
        """Cancel an unpaid transaction whose reservation lapsed."""
        async with self.repository.transaction() as conn:
            expired = await self.repository.update_transaction(
                transaction.id,
                {'status': TransactionStatus.CANCELLED},
                expected_status=[TransactionStatus.PENDING_PAYMENT],
                conn=conn
            )
            if expired is None:
                return False
            await self.listings.release_listing(transaction.listing_id, transaction.id, conn=conn)
            await self.repository.add_event(
                transaction.id,
                _event(
                    TransactionEventType.RESERVATION_EXPIRED,
                    'Payment window expired; listing released',
                    timestamp=now
                ),
                conn=conn
            )

        logger.info(f"Expired unpaid transaction {transaction.id}")
        return True

    async def expire_stale_reservations(self, now: Optional[datetime] = None) -> int:
        """Put listings back on sale whose unpaid hold has lapsed.

        Returns:
            Number of transactions expired
        """
        now = now or utcnow()
        listings = await self.listings.find_expired_reservations(now)
        expired_count = 0

        for listing in listings:
            transaction = None
            if listing.reserved_by is not None:
                transaction = await self.repository.get_transaction(listing.reserved_by)

            if transaction is None:
                logger.warning(f"Listing {listing.id} reserved by unknown transaction; releasing")
                await self.listings.update_status(listing.id, ListingStatus.ACTIVE)
                continue

            if transaction.status == TransactionStatus.CANCELLED:
                await self.listings.release_listing(listing.id, transaction.id)
                continue

            if transaction.status != TransactionStatus.PENDING_PAYMENT or transaction.payment_id:
                await self.listings.confirm_reservation(listing.id, transaction.id)
                continue

            if await self._expire(transaction, now):
                expired_count += 1

        if expired_count:
            logger.info(f"Expired {expired_count} unpaid reservations")
        return expired_count

    async def get_transaction_stats(self, seller_id: Optional[TransactionId] = None) -> TransactionStats:
        """Summarize transactions, optionally for one seller.

        Revenue counts completed transactions only; the average order value
        is revenue over completed transactions.
        """
        rows = await self.repository.status_counts(
            _as_uuid(seller_id) if seller_id is not None else None
        )

        breakdown = {status.value: 0 for status in TransactionStatus}
        total_revenue = Decimal('0')
        for row in rows:
            status = getattr(row['status'], 'value', row['status'])
            breakdown[status] = breakdown.get(status, 0) + int(row['count'])
            if status == TransactionStatus.COMPLETED.value:
                total_revenue += Decimal(str(row['total_amount']))

        total = sum(breakdown.values())
        completed = breakdown[TransactionStatus.COMPLETED.value]
        average = (
            (total_revenue / completed).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
            if completed else Decimal('0.00')
        )

        return TransactionStats(
            total_transactions=total,
            total_revenue=to_money(total_revenue),
            average_order_value=average,
            completion_rate=round(completed / total, 4) if total else 0.0,
            status_breakdown=breakdown
        )


__all__ = [
    'TransactionService',
    'TransactionRepository',
    'Transaction',
    'TransactionEvent',
    'TransactionEventType',
    'TransactionStatus',
    'TransactionStats',
    'TransactionUpdate',
    'CreateTransactionRequest',
    'CreateTransactionResult',
    'PaymentInstructions',
    'PaymentOutcome',
    'ALLOWED_TRANSITIONS',
    'TransactionError',
    'BuyerNotFoundError',
    'InvalidPaymentMethodError',
    'InvalidStatusTransitionError',
    'InvalidTransactionStateError',
    'InvalidTransactionUpdateError',
    'ListingNotFoundError',
    'ListingUnavailableError',
    'NotTransactionBuyerError',
    'PaymentExpiredError',
    'RefundFailedError',
    'SelfPurchaseError',
    'TransactionNotCancellableError',
    'TransactionNotFoundError',
]
