from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from innsync.booking_store import BookingStore
from innsync.config_manager import ConfigManager
from innsync.errors import RoomUnavailableError
from innsync.models import Feed, Room, RunSummary
from innsync.scheduler import SyncScheduler
from innsync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class PropertySyncRequest(BaseModel):
    property_id: str = Field(min_length=1)
    status_mode: str | None = None


class FeedSyncRequest(BaseModel):
    feed_id: str = Field(min_length=1)
    status_mode: str | None = None


class PropertyUpsertRequest(BaseModel):
    account_id: str = Field(min_length=1)
    name: str = ""
    timezone: str | None = None
    check_in_time: str | None = None
    check_out_time: str | None = None


class RoomUpsertRequest(BaseModel):
    id: str = Field(min_length=1)
    property_id: str = Field(min_length=1)
    name: str = ""
    room_type_id: str | None = None


class FeedUpsertRequest(BaseModel):
    id: str = Field(min_length=1)
    property_id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    room_id: str | None = None
    room_type_id: str | None = None
    provider: str = ""
    is_active: bool = True
    color: str = ""


class SuppressionRequest(BaseModel):
    property_id: str = Field(min_length=1)
    uid: str = Field(min_length=1)
    note: str = ""


class AssignRequest(BaseModel):
    room_id: str = Field(min_length=1)
    status_mode: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.store = BookingStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _summary_response(summary: RunSummary) -> dict[str, Any]:
    if not summary.feeds and summary.skipped_accounts:
        skipped = summary.skipped_accounts[0]
        raise HTTPException(
            status_code=429,
            detail={
                "reason": skipped.reason,
                "cooldown_remaining_sec": skipped.cooldown_remaining_sec,
                "summary": summary.to_dict(),
            },
        )
    return {"message": "sync completed", "result": summary.to_dict()}


def create_app() -> FastAPI:
    config_path = os.getenv("INNSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("INNSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Innsync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": updated.to_dict(),
        }

    @app.put("/api/properties/{property_id}")
    def put_property(property_id: str, request: PropertyUpsertRequest) -> dict[str, Any]:
        app.state.context.store.upsert_property(
            property_id=property_id,
            account_id=request.account_id,
            name=request.name,
            timezone=request.timezone,
            check_in_time=request.check_in_time,
            check_out_time=request.check_out_time,
        )
        return {"message": "property saved", "property_id": property_id}

    @app.get("/api/properties/{property_id}/bookings")
    def property_bookings(property_id: str, include_cancelled: bool = True) -> dict[str, Any]:
        bookings = app.state.context.store.list_bookings(property_id, include_cancelled=include_cancelled)
        return {"bookings": [booking.to_dict() for booking in bookings]}

    @app.post("/api/rooms")
    def put_room(request: RoomUpsertRequest) -> dict[str, Any]:
        store = app.state.context.store
        if store.get_property_policy(request.property_id) is None:
            raise HTTPException(status_code=404, detail="property not found")
        store.add_room(
            Room(id=request.id, property_id=request.property_id, name=request.name, room_type_id=request.room_type_id)
        )
        return {"message": "room saved", "room_id": request.id}

    @app.get("/api/feeds")
    def list_feeds(property_id: str | None = None, active_only: bool = False) -> dict[str, Any]:
        feeds = app.state.context.store.list_feeds(active_only=active_only, property_id=property_id)
        return {
            "feeds": [
                {
                    "id": feed.id,
                    "property_id": feed.property_id,
                    "room_id": feed.room_id,
                    "room_type_id": feed.room_type_id,
                    "provider": feed.provider,
                    "is_active": feed.is_active,
                    "scope": feed.scope,
                    "last_sync": feed.last_sync.isoformat() if feed.last_sync else None,
                    "color": feed.color,
                }
                for feed in feeds
            ]
        }

    @app.post("/api/feeds")
    def put_feed(request: FeedUpsertRequest) -> dict[str, Any]:
        store = app.state.context.store
        if store.get_property_policy(request.property_id) is None:
            raise HTTPException(status_code=404, detail="property not found")
        if request.room_id and request.room_type_id:
            raise HTTPException(status_code=400, detail="a feed is scoped to a room or a room type, not both")
        store.upsert_feed(
            Feed(
                id=request.id,
                property_id=request.property_id,
                url=request.url,
                room_id=request.room_id,
                room_type_id=request.room_type_id,
                provider=request.provider,
                is_active=request.is_active,
                color=request.color,
            )
        )
        return {"message": "feed saved", "feed_id": request.id}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/property")
    def sync_property(request: PropertySyncRequest) -> dict[str, Any]:
        try:
            summary = app.state.context.sync_engine.run_property_sweep(
                request.property_id, status_mode=request.status_mode
            )
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _summary_response(summary)

    @app.post("/api/sync/feed")
    def sync_feed(request: FeedSyncRequest) -> dict[str, Any]:
        try:
            summary = app.state.context.sync_engine.run_single_feed(request.feed_id, status_mode=request.status_mode)
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _summary_response(summary)

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.store.recent_sync_runs(limit=limit)}

    @app.get("/api/feeds/{feed_id}/logs")
    def feed_logs(feed_id: str, limit: int = 20) -> dict[str, Any]:
        if app.state.context.store.get_feed(feed_id) is None:
            raise HTTPException(status_code=404, detail="feed not found")
        return {"logs": app.state.context.store.recent_feed_logs(feed_id, limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/suppressions")
    def list_suppressions(property_id: str) -> dict[str, Any]:
        return {"suppressions": app.state.context.store.list_suppressions(property_id)}

    @app.post("/api/suppressions")
    def add_suppression(request: SuppressionRequest) -> dict[str, Any]:
        cancelled_id = app.state.context.sync_engine.suppress_uid(request.property_id, request.uid, request.note)
        return {"message": "uid suppressed", "cancelled_booking_id": cancelled_id}

    @app.delete("/api/suppressions")
    def remove_suppression(property_id: str, uid: str) -> dict[str, Any]:
        if not app.state.context.sync_engine.unsuppress_uid(property_id, uid):
            raise HTTPException(status_code=404, detail="suppression not found")
        return {"message": "suppression removed"}

    @app.get("/api/unassigned")
    def list_unassigned(property_id: str | None = None, include_resolved: bool = False) -> dict[str, Any]:
        items = app.state.context.store.list_unassigned(property_id, include_resolved=include_resolved)
        return {"events": [item.to_dict() for item in items]}

    @app.post("/api/unassigned/{event_id}/assign")
    def assign_unassigned(event_id: str, request: AssignRequest) -> dict[str, Any]:
        try:
            booking = app.state.context.sync_engine.assign_unassigned(
                event_id, request.room_id, status_mode=request.status_mode
            )
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except RoomUnavailableError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"message": "event assigned", "booking": booking.to_dict()}

    @app.post("/api/unassigned/reconcile")
    def reconcile_unassigned(property_id: str | None = None) -> dict[str, Any]:
        counts = app.state.context.sync_engine.reconcile_unassigned(property_id)
        return {"message": "reconciliation completed", "counts": counts}

    return app


app = create_app()
