"""
HTTP interface for the UI collaborator.

Thin FastAPI layer over ``AllocationEngine``: bodies and responses are the
camelCase pydantic schemas, engine errors become JSON error bodies with the
status code carried by each error type.
"""

from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from evbooking.config import settings
from evbooking.engine import AllocationEngine
from evbooking.errors import EngineError
from evbooking.logging_context import get_request_logger, request_scope
from evbooking.schemas.allocation_schema import (
    AllocationResult,
    CancelBookingBody,
    CancelBookingResponse,
    MarkAllReadBody,
    OfferBody,
    RequestSlotBody,
)
from evbooking.schemas.booking_schema import Booking, ChargeRequest, SlotInstance
from evbooking.schemas.notification_schema import Notification
from evbooking.schemas.station_schema import Station
from evbooking.schemas.waitlist_schema import WaitlistEntry, WaitlistEntryView

logger = get_request_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def create_app(engine: Optional[AllocationEngine] = None) -> FastAPI:
    """Build the API around ``engine`` (a fresh one with default stations if omitted)."""
    engine = engine if engine is not None else AllocationEngine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        engine.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.server.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        with request_scope(request.headers.get(REQUEST_ID_HEADER)) as request_id:
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        logger.info("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    # ------------------------------------------------------------------ #
    # Allocation
    # ------------------------------------------------------------------ #

    @app.post("/requestSlot", response_model=AllocationResult, response_model_exclude_none=True)
    def request_slot(body: RequestSlotBody) -> AllocationResult:
        request = ChargeRequest(**dict(body), created_at=engine.clock())
        return engine.request_slot(request)

    @app.post("/cancelBooking", response_model=CancelBookingResponse)
    def cancel_booking(body: CancelBookingBody) -> CancelBookingResponse:
        booking = engine.cancel_booking(body.booking_id)
        return CancelBookingResponse(success=True, booking=booking)

    @app.post("/confirmOffer", response_model=AllocationResult, response_model_exclude_none=True)
    def confirm_offer(body: OfferBody) -> AllocationResult:
        return engine.confirm_offer(body.entry_id)

    @app.post("/declineOffer", response_model=WaitlistEntry)
    def decline_offer(body: OfferBody) -> WaitlistEntry:
        return engine.decline_offer(body.entry_id)

    @app.post("/sweepExpirations", response_model=list[WaitlistEntry])
    def sweep_expirations() -> list[WaitlistEntry]:
        return engine.sweep_expirations()

    # ------------------------------------------------------------------ #
    # Read models
    # ------------------------------------------------------------------ #

    @app.get("/availability", response_model=list[SlotInstance])
    def availability(
        station_id: str = Query(alias="stationId"),
        day: date = Query(alias="date"),
    ) -> list[SlotInstance]:
        return engine.availability(station_id, day)

    @app.get("/waitlist", response_model=list[WaitlistEntryView])
    def waitlist(
        station_id: str = Query(alias="stationId"),
        day: date = Query(alias="date"),
    ) -> list[WaitlistEntryView]:
        return engine.waitlist_view(station_id, day)

    @app.get("/waitlist/entries", response_model=list[WaitlistEntryView])
    def waitlist_entries(requester_id: str = Query(alias="requesterId")) -> list[WaitlistEntryView]:
        return engine.list_entries(requester_id)

    @app.get("/waitlist/entries/{entry_id}", response_model=WaitlistEntryView)
    def waitlist_entry(entry_id: str) -> WaitlistEntryView:
        return engine.get_entry(entry_id)

    @app.get("/stations", response_model=list[Station])
    def stations() -> list[Station]:
        return engine.catalog.list_stations()

    @app.get("/stations/{station_id}", response_model=Station)
    def station(station_id: str) -> Station:
        return engine.catalog.get_station(station_id)

    @app.get("/bookings", response_model=list[Booking])
    def bookings(requester_id: str = Query(alias="requesterId")) -> list[Booking]:
        return engine.list_bookings(requester_id)

    @app.get("/bookings/{booking_id}", response_model=Booking)
    def booking(booking_id: str) -> Booking:
        return engine.get_booking(booking_id)

    # ------------------------------------------------------------------ #
    # Notifications
    # ------------------------------------------------------------------ #

    @app.get("/notifications", response_model=list[Notification])
    def notifications(
        requester_id: str = Query(alias="requesterId"),
        unread_only: bool = Query(default=False, alias="unreadOnly"),
    ) -> list[Notification]:
        return engine.notifications.list_for(requester_id, unread_only=unread_only)

    @app.post("/notifications/read-all")
    def mark_all_read(body: MarkAllReadBody) -> dict:
        return {"success": True, "updated": engine.notifications.mark_all_as_read(body.requester_id)}

    @app.post("/notifications/{notification_id}/read", response_model=Notification)
    def mark_read(notification_id: str) -> Notification:
        return engine.notifications.mark_as_read(notification_id)

    @app.delete("/notifications/{notification_id}")
    def delete_notification(notification_id: str) -> dict:
        engine.notifications.delete(notification_id)
        return {"success": True}

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "stations": len(engine.catalog.list_stations())}

    return app
