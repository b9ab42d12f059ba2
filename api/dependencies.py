"""API Dependencies - Dependency injection for FastAPI."""

from typing import Optional

import redis.asyncio as aioredis

from config.settings import (
    FIREBASE_ACCESS_TOKEN,
    FIREBASE_STORAGE_BUCKET,
    PAYPAL_BASE_URL,
    PAYPAL_CLIENT_ID,
    PAYPAL_SECRET,
    PAYPAL_TIMEOUT_SECONDS,
    POLAR_WEBHOOK_SECRET,
    RATE_LIMIT_BACKEND,
    REDIS_URL,
    REPLICATE_API_KEY,
)
from api.services.account_service import AccountService
from api.services.balance_cache import BalanceCache
from api.services.blob_storage import FirebaseBlobStorage
from api.services.generation_pipeline import StoryGenerationPipeline
from api.services.ledger import PaymentLedger
from api.services.payment_engine import LoggingEventSink, PaymentOrchestrator
from api.services.paypal_provider import PayPalVerifier
from api.services.polar_provider import PolarWebhookProcessor
from api.services.rate_limiter import RateLimiter, build_rate_limiter
from api.services.recovery_service import RecoveryService
from api.services.story_generator import ReplicateClient
from api.services.story_library import StoryLibrary


# Async Redis client singleton
_async_redis_client: Optional[aioredis.Redis] = None


def get_redis() -> aioredis.Redis:
    """Get async Redis client. Connections are opened lazily on first command."""
    global _async_redis_client
    if _async_redis_client is None:
        _async_redis_client = aioredis.from_url(REDIS_URL, decode_responses=True)
    return _async_redis_client


_balance_cache: Optional[BalanceCache] = None
_ledger: Optional[PaymentLedger] = None
_accounts: Optional[AccountService] = None
_verifier: Optional[PayPalVerifier] = None
_orchestrator: Optional[PaymentOrchestrator] = None
_recovery: Optional[RecoveryService] = None
_polar: Optional[PolarWebhookProcessor] = None
_rate_limiter: Optional[RateLimiter] = None
_replicate: Optional[ReplicateClient] = None
_pipeline: Optional[StoryGenerationPipeline] = None
_library: Optional[StoryLibrary] = None


def get_balance_cache() -> BalanceCache:
    global _balance_cache
    if _balance_cache is None:
        _balance_cache = BalanceCache(get_redis())
    return _balance_cache


def get_ledger() -> PaymentLedger:
    global _ledger
    if _ledger is None:
        _ledger = PaymentLedger()
    return _ledger


def get_account_service() -> AccountService:
    global _accounts
    if _accounts is None:
        _accounts = AccountService()
    return _accounts


def get_paypal_verifier() -> PayPalVerifier:
    global _verifier
    if _verifier is None:
        _verifier = PayPalVerifier(
            client_id=PAYPAL_CLIENT_ID,
            secret=PAYPAL_SECRET,
            base_url=PAYPAL_BASE_URL,
            timeout=PAYPAL_TIMEOUT_SECONDS,
        )
    return _verifier


def get_payment_orchestrator() -> PaymentOrchestrator:
    """
    Get or create PaymentOrchestrator singleton.

    Wires the SQL ledger, the PayPal verifier, the logging event sink
    and the Redis balance cache.
    """
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PaymentOrchestrator(
            ledger=get_ledger(),
            verifier=get_paypal_verifier(),
            event_sink=LoggingEventSink(),
            balance_cache=get_balance_cache(),
        )
    return _orchestrator


def get_recovery_service() -> RecoveryService:
    global _recovery
    if _recovery is None:
        _recovery = RecoveryService(balance_cache=get_balance_cache())
    return _recovery


def get_polar_processor() -> PolarWebhookProcessor:
    global _polar
    if _polar is None:
        _polar = PolarWebhookProcessor(
            ledger=get_ledger(),
            secret=POLAR_WEBHOOK_SECRET,
            balance_cache=get_balance_cache(),
        )
    return _polar


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        redis_client = get_redis() if RATE_LIMIT_BACKEND == "redis" else None
        _rate_limiter = build_rate_limiter(RATE_LIMIT_BACKEND, redis_client)
    return _rate_limiter


def get_replicate_client() -> ReplicateClient:
    global _replicate
    if _replicate is None:
        _replicate = ReplicateClient(api_key=REPLICATE_API_KEY)
    return _replicate


def get_story_pipeline() -> StoryGenerationPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = StoryGenerationPipeline(
            rate_limiter=get_rate_limiter(),
            accounts=get_account_service(),
            generator=get_replicate_client(),
            storage=FirebaseBlobStorage(FIREBASE_STORAGE_BUCKET, FIREBASE_ACCESS_TOKEN),
            balance_cache=get_balance_cache(),
        )
    return _pipeline


def get_story_library() -> StoryLibrary:
    global _library
    if _library is None:
        _library = StoryLibrary()
    return _library


async def close_clients() -> None:
    """Release pooled HTTP and Redis connections on shutdown."""
    if _verifier is not None:
        await _verifier.close()
    if _replicate is not None:
        await _replicate.close()
    if _async_redis_client is not None:
        await _async_redis_client.aclose()
