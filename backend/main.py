from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from api.routes import router
from contextlib import asynccontextmanager
import logging
import os
import time
import sentry_sdk

from logging_config import setup_logging
from collectors.base import EtagStore
from collectors.coingecko_collector import CoinGeckoTrendAdapter
from collectors.fear_greed_collector import FearGreedAdapter
from collectors.funding_collector import FundingAdapter
from collectors.polymarket_collector import PolymarketAdapter
from engine.aggregator import AggregatorConfig, SignalAggregator
from engine.circuit_breaker import BreakerConfig
from engine.market_snapshot import MarketDataService
from engine.registry import SignalRegistry
from engine.signals_cache import SignalsCache
from engine.signals_health import HealthTracker

setup_logging()
logger = logging.getLogger(__name__)


# Initialize Sentry if DSN is configured
_sentry_dsn = os.getenv("SENTRY_DSN", "")
if _sentry_dsn:
    sentry_sdk.init(
        dsn=_sentry_dsn,
        traces_sample_rate=0.1,
        environment=os.getenv("ENVIRONMENT", "production"),
    )


def build_aggregator(registry: SignalRegistry = None, cache: SignalsCache = None) -> SignalAggregator:
    """Wire the live adapters into an aggregator. One ETag store per process."""
    config = AggregatorConfig.from_env()
    registry = registry or SignalRegistry(breaker_config=BreakerConfig.from_env())
    cache = cache or SignalsCache(fresh_ttl_ms=config.fresh_ttl_ms, clock=registry.clock)
    etags = EtagStore()
    adapters = [
        FearGreedAdapter(etags),
        FundingAdapter(etags),
        PolymarketAdapter(etags),
        CoinGeckoTrendAdapter(etags),
    ]
    return SignalAggregator(adapters, registry, cache, config)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Predikt signals service starting")
    aggregator = build_aggregator()
    app.state.aggregator = aggregator
    app.state.health_tracker = HealthTracker(aggregator.registry.clock)
    app.state.market_data = MarketDataService(clock=aggregator.registry.clock)
    logger.info("Signal sources: %s", ", ".join(a.name for a in aggregator.adapters))

    yield

    logger.info("Predikt signals service shutting down")


app = FastAPI(
    title="Predikt Signals",
    description="Resilient market signal feed and creator/model scoring",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["ETag", "X-Cache"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round(time.time() - start, 3)
    if request.url.path != "/health":
        logger.info("request | %s %s | %s | %.3fs", request.method, request.url.path, response.status_code, duration)
    return response


app.include_router(router, prefix="/api")


@app.get("/health")
async def health():
    aggregator = getattr(app.state, "aggregator", None)
    return {
        "status": "ok",
        "service": "predikt-signals",
        "sources": [a.name for a in aggregator.adapters] if aggregator else [],
    }
