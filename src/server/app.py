from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Dict, List, Optional, Set

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fleet import (
    Actor,
    ConflictError,
    DispatchCenter,
    DispatchError,
    DispatchSettings,
    GeoPoint,
    InvalidTransitionError,
    NotFoundError,
    Subscription,
    UnauthorizedError,
    ValidationError,
    parse_credential,
)

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    InvalidTransitionError: 400,
    ConflictError: 409,
    UnauthorizedError: 403,
    ValidationError: 422,
}


class Location(BaseModel):
    latitude: float
    longitude: float

    def to_point(self) -> GeoPoint:
        return GeoPoint.parse(self.latitude, self.longitude)


class AmbulanceCreate(BaseModel):
    name: str
    registration: str
    kind: str = Field("basic", alias="type")
    capacity: int = 1
    equipment: List[str] = []
    driver: Dict[str, str] = {}
    location: Optional[Location] = None
    provider_id: Optional[str] = Field(None, alias="providerId")


class AmbulanceUpdate(BaseModel):
    name: Optional[str] = None
    kind: Optional[str] = Field(None, alias="type")
    capacity: Optional[int] = None
    equipment: Optional[List[str]] = None
    driver: Optional[Dict[str, str]] = None


class StatusUpdate(BaseModel):
    status: str
    force: bool = False


class ForceCompleteRequest(BaseModel):
    target_status: Optional[str] = Field(None, alias="targetStatus")


class TripCreate(BaseModel):
    request_location: Location = Field(alias="requestLocation")
    patient_details: Dict[str, object] = Field(default_factory=dict, alias="patientDetails")
    emergency_details: str = Field("", alias="emergencyDetails")
    destination_location: Optional[Location] = Field(None, alias="destinationLocation")
    preferred_ambulance_id: Optional[str] = Field(None, alias="preferredAmbulanceId")
    requester_id: Optional[str] = Field(None, alias="requesterId")


class AcceptRequest(BaseModel):
    ambulance_id: str = Field(alias="ambulanceId")


class TransitionRequest(BaseModel):
    status: str
    reason: Optional[str] = None


class StreamClient:
    """One websocket connection and the bus subscriptions it owns."""

    def __init__(self, websocket: WebSocket, actor: Actor, queue_size: int) -> None:
        self.websocket = websocket
        self.actor = actor
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.subscriptions: Dict[str, Subscription] = {}

    def enqueue(self, message: dict) -> None:
        """Thread-safe; bus callbacks run on whichever thread committed the change."""

        self.loop.call_soon_threadsafe(self.push, message)

    def push(self, message: dict) -> None:
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Dropping %s message for %s; outbound queue is full",
                message.get("type"),
                self.actor.actor_id,
            )


class StreamManager:
    """Pushes bus events to websocket clients and periodically reconciles them."""

    def __init__(self, center: DispatchCenter, reconcile_interval: float, queue_size: int) -> None:
        self.center = center
        self.reconcile_interval = reconcile_interval
        self.queue_size = queue_size
        self.clients: Set[StreamClient] = set()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        for client in set(self.clients):
            await self.unregister(client)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.reconcile_interval)
            self.reconcile()

    def reconcile(self) -> int:
        """Queue the authoritative state of every subscribed topic; returns messages queued.

        Access is checked again first; a topic the client may no longer watch
        is dropped and the client told so.
        """

        queued = 0
        for client in set(self.clients):
            for topic in list(client.subscriptions):
                try:
                    self.center.authorize_topic(client.actor, topic)
                except DispatchError as exc:
                    self.unsubscribe(client, topic)
                    client.push({"type": "unsubscribed", "topic": topic, "reason": exc.code})
                    queued += 1
                    logger.info("Dropped %s for %s: %s", topic, client.actor.actor_id, exc.message)
                    continue
                try:
                    snapshot = self.center.topic_snapshot(topic)
                except DispatchError:
                    logger.debug("Skipping reconcile of %s", topic, exc_info=True)
                    continue
                client.push({"type": "reconcile", "topic": topic, "snapshot": snapshot})
                queued += 1
        return queued

    async def register(self, websocket: WebSocket, actor: Actor) -> StreamClient:
        await websocket.accept()
        client = StreamClient(websocket, actor, self.queue_size)
        self.clients.add(client)
        logger.info("Stream client connected: %s (%s)", actor.actor_id, actor.role.value)
        return client

    async def unregister(self, client: StreamClient) -> None:
        self.clients.discard(client)
        for subscription in list(client.subscriptions.values()):
            subscription.cancel()
        client.subscriptions.clear()
        with contextlib.suppress(Exception):
            await client.websocket.close()

    async def pump(self, client: StreamClient) -> None:
        while True:
            message = await client.queue.get()
            await client.websocket.send_text(json.dumps(message))

    def handle(self, client: StreamClient, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            client.push({"type": "error", "error": "validation_error", "detail": "Invalid JSON"})
            return
        if not isinstance(message, dict):
            client.push({"type": "error", "error": "validation_error", "detail": "Expected an object"})
            return
        action = message.get("action")
        topic = message.get("topic")
        try:
            if not isinstance(topic, str):
                raise ValidationError("topic is required")
            if action == "subscribe":
                snapshot = self.subscribe(client, topic)
                client.push({"type": "subscribed", "topic": topic, "snapshot": snapshot})
            elif action == "unsubscribe":
                self.unsubscribe(client, topic)
                client.push({"type": "unsubscribed", "topic": topic})
            else:
                raise ValidationError(f"Unknown action '{action}'")
        except DispatchError as exc:
            client.push({"type": "error", "topic": topic, **exc.to_dict()})

    def subscribe(self, client: StreamClient, topic: str) -> object:
        self.center.authorize_topic(client.actor, topic)
        if topic not in client.subscriptions:
            client.subscriptions[topic] = self.center.bus.subscribe(
                topic,
                lambda event, matched: client.enqueue(event.to_message(matched)),
                event_filter=self.center.topic_filter(client.actor),
            )
        return self.center.topic_snapshot(topic)

    def unsubscribe(self, client: StreamClient, topic: str) -> None:
        subscription = client.subscriptions.pop(topic, None)
        if subscription is not None:
            subscription.cancel()


def current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    scheme, _, credential = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing bearer credential")
    try:
        return parse_credential(credential)
    except UnauthorizedError as exc:
        raise HTTPException(status_code=401, detail=exc.message)


def _status_code_for(exc: DispatchError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_statuses(values: Optional[List[str]]) -> Optional[List[str]]:
    if not values:
        return None
    statuses = [part.strip() for value in values for part in value.split(",") if part.strip()]
    return statuses or None


def create_app(
    settings: Optional[DispatchSettings] = None,
    center: Optional[DispatchCenter] = None,
) -> FastAPI:
    settings = settings or (center.settings if center else DispatchSettings())
    center = center or DispatchCenter(settings)
    streams = StreamManager(center, settings.reconcile_interval_seconds, settings.stream_queue_size)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        await streams.start()
        try:
            yield
        finally:
            await streams.stop()

    app = FastAPI(title="Ambulance Dispatch API", lifespan=lifespan)
    app.state.center = center
    app.state.streams = streams
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
        return JSONResponse(status_code=_status_code_for(exc), content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "bad_request", "detail": str(exc)})

    # -- ambulances -------------------------------------------------------
    @app.post("/ambulances", status_code=201)
    def register_ambulance(body: AmbulanceCreate, actor: Actor = Depends(current_actor)) -> dict:
        ambulance = center.register_ambulance(
            actor,
            name=body.name,
            registration=body.registration,
            kind=body.kind,
            capacity=body.capacity,
            equipment=body.equipment,
            driver=body.driver,
            location=body.location.to_point() if body.location else None,
            provider_id=body.provider_id,
        )
        return ambulance.to_dict()

    @app.get("/ambulances")
    def list_ambulances(
        provider_id: Optional[str] = Query(None, alias="providerId"),
        actor: Actor = Depends(current_actor),
    ) -> List[dict]:
        return [a.to_dict() for a in center.list_ambulances(actor, provider_id)]

    @app.get("/ambulances/{ambulance_id}")
    def get_ambulance(ambulance_id: str, actor: Actor = Depends(current_actor)) -> dict:
        return center.get_ambulance(actor, ambulance_id).to_dict()

    @app.patch("/ambulances/{ambulance_id}")
    def update_ambulance(
        ambulance_id: str, body: AmbulanceUpdate, actor: Actor = Depends(current_actor)
    ) -> dict:
        ambulance = center.update_ambulance(
            actor,
            ambulance_id,
            name=body.name,
            kind=body.kind,
            capacity=body.capacity,
            equipment=body.equipment,
            driver=body.driver,
        )
        return ambulance.to_dict()

    @app.delete("/ambulances/{ambulance_id}")
    def retire_ambulance(ambulance_id: str, actor: Actor = Depends(current_actor)) -> dict:
        return center.retire_ambulance(actor, ambulance_id).to_dict()

    @app.put("/ambulances/{ambulance_id}/location")
    def update_location(
        ambulance_id: str, body: Location, actor: Actor = Depends(current_actor)
    ) -> dict:
        return center.set_ambulance_location(actor, ambulance_id, body.to_point()).to_dict()

    @app.put("/ambulances/{ambulance_id}/status")
    def update_status(
        ambulance_id: str, body: StatusUpdate, actor: Actor = Depends(current_actor)
    ) -> dict:
        return center.set_ambulance_status(actor, ambulance_id, body.status, force=body.force).to_dict()

    @app.post("/ambulances/{ambulance_id}/force-complete")
    def force_complete(
        ambulance_id: str,
        body: Optional[ForceCompleteRequest] = None,
        actor: Actor = Depends(current_actor),
    ) -> dict:
        target = body.target_status if body else None
        ambulance, completed = center.force_complete_trips(actor, ambulance_id, target)
        return {"ambulance": ambulance.to_dict(), "completedTripIds": completed}

    # -- matching ---------------------------------------------------------
    @app.get("/match")
    def match_ambulances(
        latitude: float,
        longitude: float,
        max_distance_km: Optional[float] = Query(None, alias="maxDistanceKm"),
        limit: Optional[int] = None,
        actor: Actor = Depends(current_actor),
    ) -> List[dict]:
        point = GeoPoint.parse(latitude, longitude)
        matches = center.match_ambulances(actor, point, max_distance_km=max_distance_km, limit=limit)
        return [match.to_dict() for match in matches]

    # -- trips ------------------------------------------------------------
    @app.post("/trips", status_code=201)
    def create_trip(body: TripCreate, actor: Actor = Depends(current_actor)) -> dict:
        trip = center.create_trip_request(
            actor,
            request_location=body.request_location.to_point(),
            patient_details=body.patient_details,
            emergency_details=body.emergency_details,
            destination_location=(
                body.destination_location.to_point() if body.destination_location else None
            ),
            preferred_ambulance_id=body.preferred_ambulance_id,
            requester_id=body.requester_id,
        )
        return trip.to_dict()

    @app.get("/trips")
    def list_trips(
        status: Optional[List[str]] = Query(None),
        actor: Actor = Depends(current_actor),
    ) -> List[dict]:
        return [t.to_dict() for t in center.list_trips(actor, _split_statuses(status))]

    @app.get("/trips/{trip_id}")
    def get_trip(trip_id: str, actor: Actor = Depends(current_actor)) -> dict:
        return center.get_trip(actor, trip_id).to_dict()

    @app.post("/trips/{trip_id}/accept")
    def accept_trip(trip_id: str, body: AcceptRequest, actor: Actor = Depends(current_actor)) -> dict:
        return center.accept_trip(actor, trip_id, body.ambulance_id).to_dict()

    @app.post("/trips/{trip_id}/status")
    def transition_trip(
        trip_id: str, body: TransitionRequest, actor: Actor = Depends(current_actor)
    ) -> dict:
        return center.transition_trip(actor, trip_id, body.status, reason=body.reason).to_dict()

    @app.post("/trips/{trip_id}/refresh")
    def refresh_trip(trip_id: str, actor: Actor = Depends(current_actor)) -> dict:
        return center.refresh_trip(actor, trip_id).to_dict()

    # -- real-time ----------------------------------------------------------
    @app.get("/sync")
    def sync_topic(topic: str, actor: Actor = Depends(current_actor)) -> dict:
        center.authorize_topic(actor, topic)
        return {"topic": topic, "snapshot": center.topic_snapshot(topic)}

    @app.websocket("/ws/stream")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None) -> None:
        try:
            actor = parse_credential(token)
        except UnauthorizedError:
            await websocket.close(code=1008)
            return
        client = await streams.register(websocket, actor)
        sender = asyncio.create_task(streams.pump(client))
        try:
            while True:
                streams.handle(client, await websocket.receive_text())
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await sender
            await streams.unregister(client)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("server.app:app", host="0.0.0.0", port=8000, reload=False)
