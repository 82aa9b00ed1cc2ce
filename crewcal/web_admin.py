from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from crewcal.config_manager import ConfigManager
from crewcal.models import ActionResult
from crewcal.scheduler import KeepAliveScheduler
from crewcal.service import SchedulingService
from crewcal.state_store import StateStore
from crewcal.sync_dispatcher import SyncDispatcher
from crewcal.sync_engine import CalendarSyncEngine
from crewcal.token_manager import TokenLifecycleManager


ERROR_STATUS = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "integration": 502,
}


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ProjectRequest(BaseModel):
    name: str = Field(min_length=1, max_length=500)
    start_date: str | None = None
    end_date: str | None = None
    sales_order: str | None = None
    poc_name: str | None = None
    poc_email: str | None = None
    poc_phone: str | None = None
    scope_link: str | None = None


class ProfileRequest(BaseModel):
    full_name: str | None = None
    email: str | None = None


class DayRequest(BaseModel):
    date: str
    start_time: str | None = None
    end_time: str | None = None


class CreateAssignmentRequest(BaseModel):
    project_id: str
    user_id: str
    booking_status: str = "draft"
    notes: str | None = None
    days: list[DayRequest] = Field(default_factory=list)
    changed_by: str | None = None


class StatusUpdateRequest(BaseModel):
    booking_status: str
    note: str | None = None
    changed_by: str | None = None


class BulkStatusRequest(BaseModel):
    assignment_ids: list[str] = Field(default_factory=list)
    booking_status: str
    note: str | None = None
    changed_by: str | None = None


class AddDaysRequest(BaseModel):
    days: list[DayRequest] = Field(default_factory=list)


class UpdateDayRequest(BaseModel):
    start_time: str
    end_time: str


class MoveDayRequest(BaseModel):
    new_date: str


class IdsRequest(BaseModel):
    ids: list[str] = Field(default_factory=list)


class ExcludedDatesRequest(BaseModel):
    dates: list[str] = Field(default_factory=list)
    reason: str | None = None


class OverrideRequest(BaseModel):
    reason: str = ""
    overridden_by: str | None = None


class ConnectRequest(BaseModel):
    code: str


class ConfirmationCreateRequest(BaseModel):
    project_id: str
    assignment_ids: list[str] = Field(default_factory=list)
    sent_to_email: str
    sent_to_name: str | None = None
    changed_by: str | None = None


class ConfirmationResponseRequest(BaseModel):
    approved: bool
    note: str | None = Field(default=None, max_length=2000)


class SubscriptionRequest(BaseModel):
    user_id: str
    feed_type: str
    project_id: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path, timeout_seconds=config.sync.repository_timeout_seconds)
        self.token_manager = TokenLifecycleManager(self.config_manager, self.state_store)
        self.sync_engine = CalendarSyncEngine(self.config_manager, self.state_store, self.token_manager)
        self.dispatcher = SyncDispatcher(max_workers=config.sync.dispatch_workers)
        self.service = SchedulingService(
            self.config_manager,
            self.state_store,
            self.token_manager,
            self.sync_engine,
            self.dispatcher,
        )
        self.scheduler = KeepAliveScheduler(
            self.token_manager,
            self.state_store,
            graph_base_url=config.microsoft.graph_base_url,
            request_timeout_seconds=config.sync.request_timeout_seconds,
            interval_seconds=config.keep_alive.interval_seconds,
            initial_delay_seconds=config.keep_alive.initial_delay_seconds,
        )

    def start(self) -> None:
        if self.config_manager.load().keep_alive.enabled:
            self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.dispatcher.shutdown()


def _respond(result: ActionResult) -> JSONResponse:
    status_code = 200 if result.success else ERROR_STATUS.get(result.error_kind or "", 500)
    return JSONResponse(status_code=status_code, content=result.to_dict())


def _days(items: list[DayRequest]) -> list[dict[str, Any]]:
    return [item.model_dump() for item in items]


def create_app() -> FastAPI:
    config_path = os.getenv("CREWCAL_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CREWCAL_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Crewcal", version="0.1.0")
    app.state.context = context

    def service() -> SchedulingService:
        return app.state.context.service

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        try:
            app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    # -- projects and people -------------------------------------------------

    @app.post("/api/projects")
    def create_project(request: ProjectRequest) -> JSONResponse:
        return _respond(service().save_project(request.model_dump()))

    @app.put("/api/projects/{project_id}")
    def update_project(project_id: str, request: ProjectRequest) -> JSONResponse:
        return _respond(service().save_project({**request.model_dump(), "id": project_id}))

    @app.put("/api/profiles/{user_id}")
    def put_profile(user_id: str, request: ProfileRequest) -> JSONResponse:
        return _respond(service().save_profile(user_id, request.full_name, request.email))

    # -- assignments ---------------------------------------------------------

    @app.post("/api/assignments")
    def create_assignment(request: CreateAssignmentRequest) -> JSONResponse:
        return _respond(
            service().create_assignment(
                request.project_id,
                request.user_id,
                status=request.booking_status,
                notes=request.notes,
                days=_days(request.days),
                changed_by=request.changed_by,
            )
        )

    @app.delete("/api/assignments/{assignment_id}")
    def remove_assignment(assignment_id: str) -> JSONResponse:
        return _respond(service().remove_assignment(assignment_id))

    @app.post("/api/assignments/bulk-status")
    def bulk_status(request: BulkStatusRequest) -> JSONResponse:
        return _respond(
            service().bulk_update_assignment_status(
                request.assignment_ids,
                request.booking_status,
                note=request.note,
                changed_by=request.changed_by,
            )
        )

    @app.post("/api/assignments/{assignment_id}/cycle-status")
    def cycle_status(assignment_id: str, changed_by: str | None = None) -> JSONResponse:
        return _respond(service().cycle_assignment_status(assignment_id, changed_by=changed_by))

    @app.put("/api/assignments/{assignment_id}/status")
    def update_status(assignment_id: str, request: StatusUpdateRequest) -> JSONResponse:
        return _respond(
            service().update_assignment_status(
                assignment_id,
                request.booking_status,
                note=request.note,
                changed_by=request.changed_by,
            )
        )

    @app.get("/api/assignments/{assignment_id}/history")
    def status_history(assignment_id: str) -> JSONResponse:
        return _respond(service().get_status_history(assignment_id))

    # -- days and exclusions -------------------------------------------------

    @app.post("/api/assignments/{assignment_id}/days")
    def add_days(assignment_id: str, request: AddDaysRequest) -> JSONResponse:
        return _respond(service().add_assignment_days(assignment_id, _days(request.days)))

    @app.patch("/api/days/{day_id}")
    def update_day(day_id: str, request: UpdateDayRequest) -> JSONResponse:
        return _respond(service().update_assignment_day(day_id, request.start_time, request.end_time))

    @app.post("/api/days/{day_id}/move")
    def move_day(day_id: str, request: MoveDayRequest) -> JSONResponse:
        return _respond(service().move_assignment_day(day_id, request.new_date))

    @app.post("/api/days/remove")
    def remove_days(request: IdsRequest) -> JSONResponse:
        return _respond(service().remove_assignment_days(request.ids))

    @app.post("/api/assignments/{assignment_id}/excluded-dates")
    def add_excluded_dates(assignment_id: str, request: ExcludedDatesRequest) -> JSONResponse:
        return _respond(service().add_excluded_dates(assignment_id, request.dates, request.reason))

    @app.post("/api/excluded-dates/bulk-remove")
    def bulk_remove_excluded(request: IdsRequest) -> JSONResponse:
        return _respond(service().bulk_remove_excluded_dates(request.ids))

    @app.delete("/api/excluded-dates/{excluded_date_id}")
    def remove_excluded_date(excluded_date_id: str) -> JSONResponse:
        return _respond(service().remove_excluded_date(excluded_date_id))

    # -- conflicts and views -------------------------------------------------

    @app.get("/api/conflicts/check")
    def check_conflicts(
        user_id: str,
        start_date: str,
        end_date: str,
        exclude_assignment_id: str | None = None,
    ) -> JSONResponse:
        return _respond(service().check_conflicts(user_id, start_date, end_date, exclude_assignment_id))

    @app.get("/api/conflicts")
    def unresolved_conflicts(user_id: str | None = None) -> JSONResponse:
        return _respond(service().get_unresolved_conflicts(user_id))

    @app.post("/api/conflicts/{conflict_id}/override")
    def override_conflict(conflict_id: str, request: OverrideRequest) -> JSONResponse:
        return _respond(service().override_conflict(conflict_id, request.reason, request.overridden_by))

    @app.get("/api/gantt")
    def gantt(
        start_date: str,
        end_date: str,
        project_id: str | None = None,
        user_id: str | None = None,
        statuses: list[str] | None = Query(default=None),
    ) -> JSONResponse:
        filters = {"project_id": project_id, "user_id": user_id, "statuses": statuses}
        return _respond(service().get_gantt_data_for_range(start_date, end_date, filters))

    # -- calendar sync -------------------------------------------------------

    @app.get("/api/users/{user_id}/connections")
    def connections(user_id: str) -> JSONResponse:
        return _respond(service().get_active_connections(user_id))

    @app.post("/api/users/{user_id}/connections")
    def connect_calendar(user_id: str, request: ConnectRequest) -> JSONResponse:
        return _respond(service().connect_calendar(user_id, request.code))

    @app.delete("/api/connections/{connection_id}")
    def disconnect_calendar(connection_id: str, user_id: str | None = None) -> JSONResponse:
        return _respond(service().disconnect_calendar(connection_id, user_id))

    @app.post("/api/users/{user_id}/sync")
    def full_sync(user_id: str) -> JSONResponse:
        return _respond(service().full_sync_for_user(user_id))

    @app.post("/api/users/{user_id}/assignments/{assignment_id}/retry-sync")
    def retry_sync(user_id: str, assignment_id: str) -> JSONResponse:
        return _respond(service().retry_sync_for_assignment(assignment_id, user_id))

    @app.get("/api/users/{user_id}/sync-errors")
    def sync_errors(user_id: str) -> JSONResponse:
        return _respond(service().get_sync_errors(user_id))

    @app.delete("/api/sync-errors/{synced_event_id}")
    def dismiss_sync_error(synced_event_id: str) -> JSONResponse:
        return _respond(service().dismiss_sync_error(synced_event_id))

    @app.get("/api/oauth/microsoft/authorize")
    def oauth_authorize(user_id: str) -> JSONResponse:
        return _respond(service().start_calendar_connect(user_id))

    @app.get("/api/oauth/microsoft/callback")
    def oauth_callback(
        state: str = "",
        code: str = "",
        error: str | None = None,
        error_description: str | None = None,
    ) -> JSONResponse:
        if error:
            return _respond(ActionResult.fail(error_description or error, "integration"))
        return _respond(service().complete_calendar_connect(state, code))

    @app.post("/api/keep-alive/run")
    def run_keep_alive() -> dict[str, Any]:
        return app.state.context.scheduler.run_once().to_dict()

    # -- confirmations and feeds ---------------------------------------------

    @app.post("/api/confirmations")
    def create_confirmation(request: ConfirmationCreateRequest) -> JSONResponse:
        return _respond(
            service().create_confirmation_request(
                request.project_id,
                request.assignment_ids,
                request.sent_to_email,
                request.sent_to_name,
                changed_by=request.changed_by,
            )
        )

    @app.post("/api/confirmations/{token}/respond")
    def respond_confirmation(token: str, request: ConfirmationResponseRequest) -> JSONResponse:
        return _respond(service().handle_confirmation_response(token, request.approved, request.note))

    @app.post("/api/feeds")
    def create_feed(request: SubscriptionRequest) -> JSONResponse:
        return _respond(service().create_feed_subscription(request.user_id, request.feed_type, request.project_id))

    @app.get("/api/users/{user_id}/feeds")
    def list_feeds(user_id: str) -> JSONResponse:
        return _respond(service().list_feed_subscriptions(user_id))

    @app.get("/ical/{token}.ics")
    def ical_feed(token: str) -> Response:
        result = service().render_feed(token)
        if not result.success:
            raise HTTPException(status_code=ERROR_STATUS.get(result.error_kind or "", 500), detail=result.error)
        return Response(content=result.data, media_type="text/calendar; charset=utf-8")

    return app
