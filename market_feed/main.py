"""Application entry point for the FastAPI market data service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from mangum import Mangum
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import ValidationError

from .config import Settings, load_settings
from .models import AnalysisRequest, UpdateRequest, utc_now
from .services.alpha_vantage import AlphaVantageClient
from .services.analysis import ChatCompletionClient, CompletionError, CompletionProvider, build_messages
from .services.baselines import YearStartBaselines
from .services.cache_store import CacheStore, InMemoryCacheStore, RedisCacheStore
from .services.data_source import DataSourceAdapter
from .services.fallback import FallbackGenerator
from .services.market_service import REFRESH_INTERVAL, MarketDataService
from .services.rate_limiter import RateLimitConfig, RateLimiter, client_identity
from .services.scheduler import RefreshScheduler, TaskNotFoundError
from .services.simulator import MarketSimulator


logger = logging.getLogger(__name__)

REFRESH_TASK_ID = "market-data-refresh"


@dataclass
class AppResources:
    settings: Settings
    store: CacheStore
    baselines: YearStartBaselines
    fallback: FallbackGenerator
    simulator: MarketSimulator
    adapter: DataSourceAdapter
    market_service: MarketDataService
    scheduler: RefreshScheduler
    rate_limiter: RateLimiter
    alpha_vantage: Optional[AlphaVantageClient] = None
    completion_provider: Optional[CompletionProvider] = None


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.getLogger("market_feed").setLevel(level)


def configure_cors(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def build_store(settings: Settings) -> CacheStore:
    if settings.redis_url:
        return RedisCacheStore(settings.redis_url, password=settings.redis_password)
    logger.warning("REDIS_URL is not set, using an in-process cache store")
    return InMemoryCacheStore()


def build_app_resources(settings: Settings, store: CacheStore | None = None) -> AppResources:
    store = store or build_store(settings)
    tz = settings.market_timezone
    baselines = YearStartBaselines(tz)
    fallback = FallbackGenerator(display_tz=tz)
    simulator = MarketSimulator(
        baselines,
        market_tz=tz,
        open_hour=settings.market_open_hour,
        close_hour=settings.market_close_hour,
    )

    alpha_vantage = None
    if settings.alpha_vantage_api_key:
        alpha_vantage = AlphaVantageClient(settings.alpha_vantage_api_key)
    else:
        logger.warning("ALPHA_VANTAGE_API_KEY is not set, refreshes will use synthetic data")
    adapter = DataSourceAdapter(
        alpha_vantage,
        fallback,
        call_budget=settings.alpha_vantage_call_budget,
        call_delay=settings.alpha_vantage_call_delay,
        display_tz=tz,
    )
    market_service = MarketDataService(store, simulator, fallback, adapter, baselines)

    scheduler = RefreshScheduler(settings.scheduler_tick_seconds)
    scheduler.register(
        REFRESH_TASK_ID,
        "Alpha Vantage Market Data Refresh",
        REFRESH_INTERVAL,
        market_service.refresh_from_source,
    )

    rate_limiter = RateLimiter(
        store,
        RateLimitConfig(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            fail_open=settings.rate_limit_fail_open,
        ),
        scope="ai",
    )

    completion_provider = None
    if settings.openai_api_key:
        completion_provider = ChatCompletionClient(
            settings.openai_api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
        )

    return AppResources(
        settings=settings,
        store=store,
        baselines=baselines,
        fallback=fallback,
        simulator=simulator,
        adapter=adapter,
        market_service=market_service,
        scheduler=scheduler,
        rate_limiter=rate_limiter,
        alpha_vantage=alpha_vantage,
        completion_provider=completion_provider,
    )


def add_lifecycle_handlers(app: FastAPI, resources: AppResources) -> None:
    async def startup_event() -> None:
        resources.scheduler.start()

    async def shutdown_event() -> None:
        await resources.scheduler.stop()
        if resources.alpha_vantage is not None:
            await resources.alpha_vantage.aclose()
        if resources.completion_provider is not None:
            await resources.completion_provider.aclose()
        await resources.store.aclose()

    app.add_event_handler("startup", startup_event)
    app.add_event_handler("shutdown", shutdown_event)


def register_market_data_routes(app: FastAPI, resources: AppResources) -> None:
    service = resources.market_service

    @app.get("/api/market-data")
    async def get_market_data() -> dict:
        try:
            snapshot = await service.read()
        except Exception as exc:  # pragma: no cover - read() already degrades
            logger.exception("Error in market data read")
            now = utc_now()
            data = resources.fallback.generate(now)
            resources.baselines.observe(data, now)
            payload = data.to_display()
            payload.update({"isFromRedis": False, "error": str(exc), "lastUpdated": now.isoformat()})
            return payload

        payload = snapshot.data.to_display()
        if snapshot.from_cache:
            payload.update({"isFromRedis": True, "lastFetched": utc_now().isoformat()})
        else:
            payload.update({"isFromRedis": False, "lastUpdated": utc_now().isoformat()})
            if snapshot.error:
                payload["error"] = snapshot.error
        return payload

    @app.post("/api/market-data")
    async def post_market_data(request: UpdateRequest) -> Response:
        if request.action != "update":
            return JSONResponse(status_code=400, content={"error": "Invalid action"})
        try:
            updated = await service.update()
        except Exception as exc:
            logger.exception("Error in market data update")
            # 200 keeps the polling client alive; the payload carries the failure.
            return JSONResponse(
                content={"success": False, "error": "Failed to process request", "details": str(exc)}
            )
        return JSONResponse(
            content={
                "success": True,
                "message": "Market data updated successfully",
                "source": updated.source.value,
                "lastUpdated": updated.last_updated.isoformat() if updated.last_updated else None,
            }
        )

    @app.post("/api/seed-cache")
    async def seed_cache() -> dict:
        result = await service.seed()
        payload = {
            "success": result.stored,
            "message": "Market data processed successfully" if result.stored else "Market data not stored",
            "timestamp": utc_now().isoformat(),
            "source": result.data.source.value,
        }
        if result.error:
            payload["error"] = result.error
        return payload


def register_scheduler_routes(app: FastAPI, resources: AppResources) -> None:
    scheduler = resources.scheduler

    @app.get("/api/scheduler")
    def get_scheduler_status() -> dict:
        return {
            "status": "running" if scheduler.is_running else "stopped",
            "registeredTasks": len(scheduler.tasks()),
            "tasks": [task.to_dict() for task in scheduler.tasks()],
            "history": [run.to_dict() for run in scheduler.history()],
        }

    @app.post("/api/scheduler/tasks/{task_id}/run")
    async def run_task(task_id: str) -> dict:
        try:
            run = await scheduler.run_now(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found") from exc
        return run.to_dict()


def register_analysis_routes(app: FastAPI, resources: AppResources) -> None:
    rate_limiter = resources.rate_limiter
    allowed_origins = set(resources.settings.ai_allowed_origins)

    @app.post("/api/ai")
    async def post_analysis(request: Request) -> Response:
        decision = await rate_limiter.check(client_identity(request.headers))
        headers = decision.headers()
        if not decision.allowed:
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded. Please try again later.", "reset": decision.reset},
                headers=headers,
            )

        origin = request.headers.get("origin", "")
        if "*" not in allowed_origins and origin not in allowed_origins:
            return JSONResponse(status_code=403, content={"error": "Unauthorized origin"}, headers=headers)

        try:
            analysis = AnalysisRequest.model_validate(await request.json())
        except ValidationError as exc:
            details = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid request format", "details": details},
                headers=headers,
            )
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid request format"}, headers=headers)

        provider = resources.completion_provider
        if provider is None:
            return JSONResponse(status_code=503, content={"error": "AI provider not configured"}, headers=headers)
        try:
            text = await provider.complete(build_messages(analysis.messages, analysis.market_data))
        except CompletionError:
            logger.exception("AI completion failed")
            return JSONResponse(status_code=500, content={"error": "Failed to generate AI response"}, headers=headers)
        return JSONResponse(content={"text": text}, headers=headers)


def register_routes(app: FastAPI, resources: AppResources) -> None:
    register_market_data_routes(app, resources)
    register_scheduler_routes(app, resources)
    register_analysis_routes(app, resources)

    @app.get("/metrics")
    def get_metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app(settings: Settings | None = None, resources: AppResources | None = None) -> FastAPI:
    """Application factory to allow testability."""

    settings = settings or (resources.settings if resources is not None else load_settings())
    configure_logging(settings)

    app = FastAPI(
        title="Market Terminal Data API",
        version="0.1.0",
        description="Cached, simulated and periodically refreshed index data for the market terminal.",
    )

    configure_cors(app, settings)
    resources = resources or build_app_resources(settings)
    app.state.resources = resources
    add_lifecycle_handlers(app, resources)
    register_routes(app, resources)

    return app


app = create_app()
lambda_handler = Mangum(app)
