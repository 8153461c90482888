"""
Table reservations: a flattened key/value repository and the service that
enforces ownership and the cancellation policy.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from dining_agent.config import RESERVATION_CONFIG
from dining_agent.errors import (
    AlreadyCancelledError,
    AuthorizationError,
    CancellationTooLateError,
    NotFoundError,
    ReservationCompletedError,
    ReservationNotFoundError,
    ValidationError,
)
from dining_agent.models import Reservation, ReservationStatus
from dining_agent.rag_system import RestaurantRAGSystem
from dining_agent.sessions import SessionStore

logger = logging.getLogger(__name__)


class ReservationRepository:
    """
    Reservations kept as flat string records plus a reverse index from
    session id to reservation ids.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, str]] = {}
        self._by_session: Dict[str, Set[str]] = {}

    @staticmethod
    def generate_id(now: datetime) -> str:
        return f"res_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"

    async def save(self, reservation: Reservation) -> Reservation:
        self._records[reservation.id] = reservation.to_record()
        self._by_session.setdefault(reservation.session_id, set()).add(reservation.id)
        return reservation

    async def get(self, reservation_id: str) -> Optional[Reservation]:
        record = self._records.get(reservation_id)
        return Reservation.from_record(record) if record else None

    async def list_for_session(self, session_id: str) -> List[Reservation]:
        """Newest first."""
        reservations = [
            Reservation.from_record(self._records[rid])
            for rid in self._by_session.get(session_id, set())
            if rid in self._records
        ]
        reservations.sort(key=lambda r: r.created_at, reverse=True)
        return reservations


class ReservationService:
    def __init__(
        self,
        repository: ReservationRepository,
        rag_system: RestaurantRAGSystem,
        session_store: SessionStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.rag_system = rag_system
        self.session_store = session_store
        self._clock = clock or datetime.now

    async def create_reservation(
        self,
        session_id: str,
        restaurant_id: str,
        date: str,
        time: str,
        guests: int,
        special_requests: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Book a table for the session.

        Contact details are copied from the session profile, never taken from
        the caller. Raises RestaurantNotFoundError for an unknown restaurant
        and ValidationError for malformed or past dates, times and guest counts.
        """
        restaurant = await self.rag_system.get_restaurant_by_id(restaurant_id)

        try:
            starts_at = datetime.strptime(f"{date.strip()} {time.strip()}", "%Y-%m-%d %H:%M")
        except ValueError:
            raise ValidationError("Date must be YYYY-MM-DD and time HH:MM")

        max_guests = RESERVATION_CONFIG["max_guests"]
        if not 1 <= guests <= max_guests:
            raise ValidationError(f"Guests must be between 1 and {max_guests}")

        now = self._clock()
        if starts_at <= now:
            raise ValidationError("Reservation time must be in the future")

        profile = await self.session_store.get_profile(session_id)
        if profile is None:
            raise ValidationError(f"No profile found for session {session_id}")

        reservation = Reservation(
            id=self.repository.generate_id(now),
            session_id=session_id,
            restaurant_id=restaurant.id,
            date=starts_at.strftime("%Y-%m-%d"),
            time=starts_at.strftime("%H:%M"),
            guests=guests,
            customer_name=profile.name.strip(),
            customer_phone=profile.phone.strip(),
            customer_email=profile.email.strip() if profile.email else None,
            special_requests=(special_requests or "").strip() or None,
            status=ReservationStatus.CONFIRMED,
            created_at=now,
            updated_at=now,
        )
        await self.repository.save(reservation)
        logger.info(f"Reservation {reservation.id} created for session {session_id} at {restaurant.name}")

        return {
            "reservation": reservation.model_dump(mode="json"),
            "restaurant": restaurant.summary(),
        }

    async def get_user_reservations(self, session_id: str) -> Dict[str, Any]:
        reservations = await self.repository.list_for_session(session_id)

        items = []
        for reservation in reservations:
            try:
                restaurant = (await self.rag_system.get_restaurant_by_id(reservation.restaurant_id)).summary()
            except NotFoundError:
                restaurant = None
            items.append({**reservation.model_dump(mode="json"), "restaurant": restaurant})

        by_status = {status: 0 for status in ReservationStatus}
        for reservation in reservations:
            by_status[reservation.status] += 1

        return {
            "reservations": items,
            "summary": {
                "total_reservations": len(reservations),
                "confirmed": by_status[ReservationStatus.CONFIRMED],
                "cancelled": by_status[ReservationStatus.CANCELLED],
                "completed": by_status[ReservationStatus.COMPLETED],
                "total_guests": sum(
                    r.guests for r in reservations if r.status != ReservationStatus.CANCELLED
                ),
            },
        }

    async def get_reservation(self, reservation_id: str, session_id: str) -> Dict[str, Any]:
        """One reservation of the session with its restaurant summary."""
        reservation = await self.repository.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        if reservation.session_id != session_id:
            raise AuthorizationError("You can only view your own reservations")

        try:
            restaurant = (await self.rag_system.get_restaurant_by_id(reservation.restaurant_id)).summary()
        except NotFoundError:
            restaurant = None
        return {"reservation": reservation.model_dump(mode="json"), "restaurant": restaurant}

    async def cancel_reservation(self, reservation_id: str, session_id: str) -> Reservation:
        reservation = await self.repository.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        if reservation.session_id != session_id:
            raise AuthorizationError("You can only cancel your own reservations")
        if reservation.status == ReservationStatus.CANCELLED:
            raise AlreadyCancelledError("Reservation is already cancelled")
        if reservation.status == ReservationStatus.COMPLETED:
            raise ReservationCompletedError("Cannot cancel a completed reservation")

        now = self._clock()
        lead_time = timedelta(hours=RESERVATION_CONFIG["cancellation_lead_hours"])
        if reservation.starts_at() - now < lead_time:
            raise CancellationTooLateError(
                f"Reservations can only be cancelled at least "
                f"{RESERVATION_CONFIG['cancellation_lead_hours']} hours before the booking time"
            )

        cancelled = reservation.model_copy(update={
            "status": ReservationStatus.CANCELLED,
            "cancelled_at": now,
            "updated_at": now,
        })
        await self.repository.save(cancelled)
        logger.info(f"Reservation {reservation_id} cancelled by session {session_id}")
        return cancelled

    async def complete_reservation(self, reservation_id: str) -> Reservation:
        reservation = await self.repository.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        if reservation.status != ReservationStatus.CONFIRMED:
            raise ValidationError(f"Only confirmed reservations can be completed (status: {reservation.status.value})")

        now = self._clock()
        completed = reservation.model_copy(update={"status": ReservationStatus.COMPLETED, "updated_at": now})
        await self.repository.save(completed)
        return completed
