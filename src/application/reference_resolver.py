import logging

from sqlalchemy.orm import Session

from src.domain.exceptions import NotFoundError
from src.domain.payments import PaymentProvider
from src.domain.references import embedded_booking_prefix
from src.infrastructure.db.models import Booking
from src.infrastructure.repositories.booking_repository import BookingRepository

logger = logging.getLogger(__name__)


def correlation_column(provider: PaymentProvider):
    if provider == PaymentProvider.STRIPE:
        return Booking.stripe_session_id
    return Booking.transaction_reference


def stored_correlation(booking: Booking, provider: PaymentProvider) -> str | None:
    if provider == PaymentProvider.STRIPE:
        return booking.stripe_session_id
    return booking.transaction_reference


def _matches(booking: Booking, provider: PaymentProvider, correlation_id: str) -> bool:
    return correlation_id in (
        stored_correlation(booking, provider),
        booking.payment_session_id,
    )


class ReferenceResolver:
    """
    Maps an external payment identifier to a booking.

    Lookup order: provider correlation field, legacy session field,
    booking id embedded in the reference, then a booking-id hint.
    Heuristic candidates are accepted only when their stored correlation
    equals the full id.
    """

    def resolve(
        self,
        db: Session,
        provider: PaymentProvider,
        correlation_id: str | None,
        booking_hint: str | None = None,
    ) -> Booking:
        repo = BookingRepository(db)

        if correlation_id:
            booking = self._single(
                repo.find_by_field(correlation_column(provider), correlation_id),
                "provider field",
                correlation_id,
            )
            if booking:
                return booking

            booking = self._single(
                repo.find_by_field(Booking.payment_session_id, correlation_id),
                "legacy session field",
                correlation_id,
            )
            if booking:
                return booking

            booking = self._by_embedded_id(repo, provider, correlation_id)
            if booking:
                return booking

        if booking_hint:
            booking = self._by_hint(repo, provider, correlation_id, booking_hint)
            if booking:
                return booking

        logger.warning(
            "No booking for payment reference. provider=%s correlation_id=%s hint=%s",
            provider.value,
            correlation_id,
            booking_hint,
        )
        raise NotFoundError(
            f"No booking found for {provider.value} reference {correlation_id or booking_hint}"
        )

    @staticmethod
    def _single(
        candidates: list[Booking],
        lookup: str,
        correlation_id: str,
    ) -> Booking | None:
        if len(candidates) > 1:
            logger.error(
                "Correlation id stored on several bookings; refusing to pick one. lookup=%s correlation_id=%s",
                lookup,
                correlation_id,
            )
            return None
        return candidates[0] if candidates else None

    def _by_embedded_id(
        self,
        repo: BookingRepository,
        provider: PaymentProvider,
        correlation_id: str,
    ) -> Booking | None:
        """
        Picks the booking whose id starts with the prefix embedded in the
        reference.

        Candidates must still hold the full reference in the same columns the
        earlier lookups search, so this step never finds a booking they missed.
        It only breaks a tie when several bookings store the same reference.
        """
        prefix = embedded_booking_prefix(correlation_id)
        if not prefix:
            return None

        candidates = repo.find_by_id_prefix(prefix)
        verified = [b for b in candidates if _matches(b, provider, correlation_id)]
        if len(verified) == 1:
            return verified[0]
        if candidates:
            logger.warning(
                "Embedded booking id did not cross-validate. correlation_id=%s candidates=%s verified=%s",
                correlation_id,
                len(candidates),
                len(verified),
            )
        return None

    def _by_hint(
        self,
        repo: BookingRepository,
        provider: PaymentProvider,
        correlation_id: str | None,
        booking_hint: str,
    ) -> Booking | None:
        booking = repo.get_by_id(booking_hint)
        if not booking:
            return None
        if correlation_id:
            if _matches(booking, provider, correlation_id):
                return booking
        elif booking.payment_provider == provider.value:
            return booking

        logger.warning(
            "Booking hint rejected: stored correlation differs. booking_id=%s provider=%s correlation_id=%s",
            booking_hint,
            provider.value,
            correlation_id,
        )
        return None
