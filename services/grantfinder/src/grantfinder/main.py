from __future__ import annotations

import time
import uuid
from contextlib import asynccontextmanager

from common.utils import now_utc_iso
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from grantfinder.errors import FilterValidationError, TransientBackendError
from grantfinder.models import (
    Action,
    ActionListResponse,
    GrantItem,
    GrantPage,
    InteractionHistoryResponse,
    InteractionRequest,
    InteractionResult,
    InteractionStateResponse,
    PreferenceProfile,
    RecommendationsResponse,
    SearchRequest,
    UpsertGrantsRequest,
    UpsertGrantsResponse,
    UserPreferences,
)
from grantfinder.observability import MetricsSnapshot, MetricsStore, log_request
from grantfinder.repository import GrantRepository
from grantfinder.service import GrantFinder
from grantfinder.settings import ServiceSettings


def unavailable(exc: TransientBackendError) -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={"message": str(exc), "retryable": exc.retryable},
    )


def create_app(
    *,
    database_path: str | None = None,
    settings: ServiceSettings | None = None,
) -> FastAPI:
    resolved_settings = settings or ServiceSettings.from_env()
    if database_path:
        resolved_settings = resolved_settings.model_copy(update={"database_path": database_path})

    repository = GrantRepository(database_path=resolved_settings.database_path)
    metrics = MetricsStore()
    finder = GrantFinder(repository, resolved_settings, metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.repository = repository
        app.state.metrics = metrics
        app.state.finder = finder
        try:
            yield
        finally:
            await finder.close()
            await run_in_threadpool(repository.close)

    app = FastAPI(title="GrantFinder Recommender", version="0.3.0", lifespan=lifespan)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()
        error: Exception | None = None
        try:
            response = await call_next(request)
        except Exception as exc:
            error = exc
            response = JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        # Group by route template so /grants/{grant_id} is one series.
        route = request.scope.get("route")
        metrics.observe(
            method=request.method,
            path=getattr(route, "path", request.url.path),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        log_request(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            source_ip=request.client.host if request.client else None,
            error=error,
        )
        response.headers["x-request-id"] = request_id
        return response

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "grantfinder"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics_snapshot(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.post("/grants", response_model=UpsertGrantsResponse)
    async def upsert_grants(payload: UpsertGrantsRequest, request: Request) -> UpsertGrantsResponse:
        try:
            updated = await request.app.state.finder.upsert_grants(payload.grants)
        except TransientBackendError as exc:
            raise unavailable(exc) from exc
        return UpsertGrantsResponse(updated=updated)

    @app.post("/grants/search", response_model=GrantPage)
    async def search_grants(payload: SearchRequest, request: Request) -> GrantPage:
        try:
            return await request.app.state.finder.filter_and_page(
                payload.filters,
                payload.page,
                payload.page_size,
            )
        except FilterValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except TransientBackendError as exc:
            raise unavailable(exc) from exc

    @app.get("/grants/{grant_id}", response_model=GrantItem)
    async def get_grant(grant_id: str, request: Request) -> GrantItem:
        try:
            grant = await request.app.state.finder.get_grant(grant_id)
        except TransientBackendError as exc:
            raise unavailable(exc) from exc
        if grant is None:
            raise HTTPException(status_code=404, detail="Unknown grant_id")
        return grant

    @app.get("/grants/{grant_id}/similar", response_model=list[GrantItem])
    async def similar_grants(
        grant_id: str,
        request: Request,
        limit: int = Query(default=3, ge=1, le=20),
    ) -> list[GrantItem]:
        try:
            grants = await request.app.state.finder.similar_grants(grant_id, limit)
        except FilterValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except TransientBackendError as exc:
            raise unavailable(exc) from exc
        if grants is None:
            raise HTTPException(status_code=404, detail="Unknown grant_id")
        return grants

    @app.get("/users/{user_id}/preferences", response_model=UserPreferences)
    async def get_preferences(user_id: str, request: Request) -> UserPreferences:
        try:
            return await request.app.state.finder.get_preferences(user_id)
        except TransientBackendError as exc:
            raise unavailable(exc) from exc

    @app.put("/users/{user_id}/preferences", response_model=UserPreferences)
    async def update_preferences(
        user_id: str,
        payload: PreferenceProfile,
        request: Request,
    ) -> UserPreferences:
        try:
            return await request.app.state.finder.update_preferences(user_id, payload)
        except TransientBackendError as exc:
            raise unavailable(exc) from exc

    @app.delete("/users/{user_id}/preferences", response_model=UserPreferences)
    async def reset_preferences(user_id: str, request: Request) -> UserPreferences:
        try:
            return await request.app.state.finder.reset_preferences(user_id)
        except TransientBackendError as exc:
            raise unavailable(exc) from exc

    @app.get("/users/{user_id}/recommendations", response_model=RecommendationsResponse)
    async def recommendations(
        user_id: str,
        request: Request,
        target_count: int | None = Query(default=None, ge=1, le=200),
    ) -> RecommendationsResponse:
        finder: GrantFinder = request.app.state.finder
        recommended = await finder.get_recommended(user_id, target_count)
        return RecommendationsResponse(
            user_id=user_id,
            target_count=target_count or finder.settings.target_count,
            generated_at=now_utc_iso(),
            recommendations=recommended,
        )

    @app.get(
        "/users/{user_id}/interactions",
        response_model=ActionListResponse | InteractionStateResponse,
    )
    async def interactions(
        user_id: str,
        request: Request,
        action: Action | None = Query(default=None),
    ) -> ActionListResponse | InteractionStateResponse:
        finder: GrantFinder = request.app.state.finder
        try:
            if action is None:
                lists = await finder.interaction_lists(user_id)
                return InteractionStateResponse(user_id=user_id, **lists)
            grants = await finder.get_by_action(user_id, action)
        except TransientBackendError as exc:
            raise unavailable(exc) from exc
        return ActionListResponse(user_id=user_id, action=action, grants=grants)

    @app.post("/users/{user_id}/interactions", response_model=InteractionResult)
    async def apply_action(
        user_id: str,
        payload: InteractionRequest,
        request: Request,
    ) -> InteractionResult:
        try:
            return await request.app.state.finder.apply_action(
                user_id,
                payload.grant_id,
                payload.action,
            )
        except TransientBackendError as exc:
            raise unavailable(exc) from exc

    @app.delete("/users/{user_id}/interactions/{grant_id}", response_model=InteractionResult)
    async def undo_action(
        user_id: str,
        grant_id: str,
        request: Request,
        action: Action = Query(...),
    ) -> InteractionResult:
        try:
            return await request.app.state.finder.undo_action(user_id, grant_id, action)
        except TransientBackendError as exc:
            raise unavailable(exc) from exc

    @app.get(
        "/users/{user_id}/interactions/{grant_id}/history",
        response_model=InteractionHistoryResponse,
    )
    async def interaction_history(
        user_id: str,
        grant_id: str,
        request: Request,
    ) -> InteractionHistoryResponse:
        try:
            return await request.app.state.finder.interaction_history(user_id, grant_id)
        except TransientBackendError as exc:
            raise unavailable(exc) from exc

    @app.delete("/users/{user_id}/session")
    async def end_session(user_id: str, request: Request) -> dict[str, bool]:
        discarded = request.app.state.finder.end_session(user_id)
        return {"discarded": discarded}

    return app


app = create_app()
