"""
Payment Engine - credit purchase processing for StoryTime.

Verifies provider captures, credits packages exactly once per
(order, user) and keeps an append-only audit trail of every
status change. PayPal orders go through PaymentOrchestrator;
Polar webhooks share the same ledger crediting primitive.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import asyncio
import logging
import secrets
from typing import Any, Awaitable, Callable, Optional

from api.services.packages import CreditPackage, amount_matches, get_package
from api.services.retry import OperationTimeoutError, with_timeout
from config.settings import (
    PAYMENT_AMOUNT_TOLERANCE,
    PAYMENT_MAX_RETRIES,
    PAYMENT_RETRY_DELAYS,
    PAYPAL_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Enums
# ============================================================================

class PaymentStatus(str, Enum):
    """Ledger and audit statuses. Provider statuses and HTTP_ERROR_{code} are stored verbatim too."""
    PENDING = "PENDING"
    CAPTURED = "CAPTURED"
    COMPLETED = "COMPLETED"
    CREDITS_RECOVERED = "CREDITS_RECOVERED"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    INVALID_PACKAGE = "INVALID_PACKAGE"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    JSON_PARSE_ERROR = "JSON_PARSE_ERROR"
    FAILED = "FAILED"


# Once a row reaches a terminal status nothing changes it again
TERMINAL_STATUSES = (PaymentStatus.COMPLETED.value,)

# Audit statuses that prove a transaction's credits reached the balance
APPLIED_STATUSES = (PaymentStatus.COMPLETED.value, PaymentStatus.CREDITS_RECOVERED.value)


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class PaymentResult:
    """Outcome of a payment operation as returned to clients."""
    success: bool
    message: str
    new_balance: Optional[int] = None
    transaction_id: Optional[int] = None
    can_retry: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"success": self.success, "message": self.message}
        if self.new_balance is not None:
            data["newBalance"] = self.new_balance
        if self.transaction_id is not None:
            data["transactionId"] = self.transaction_id
        if self.can_retry is not None:
            data["canRetry"] = self.can_retry
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class VerificationResult:
    """What the provider says about an order. Never implies credits were applied."""
    success: bool
    amount: Optional[Decimal] = None
    currency: str = "USD"
    capture_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None  # TIMEOUT, NETWORK_ERROR, HTTP_ERROR, JSON_PARSE_ERROR, NOT_CONFIGURED, NOT_COMPLETED
    retryable: bool = False
    http_status: Optional[int] = None
    raw: dict = field(default_factory=dict)

    @property
    def ledger_status(self) -> str:
        """Status string to persist for a failed verification."""
        if self.error_code == "HTTP_ERROR" and self.http_status:
            return f"HTTP_ERROR_{self.http_status}"
        if self.error_code == "TIMEOUT":
            return PaymentStatus.TIMEOUT_ERROR.value
        if self.error_code == "NETWORK_ERROR":
            return PaymentStatus.NETWORK_ERROR.value
        if self.error_code == "JSON_PARSE_ERROR":
            return PaymentStatus.JSON_PARSE_ERROR.value
        return self.status or PaymentStatus.VERIFICATION_FAILED.value


@dataclass
class CreditOutcome:
    """Result of the atomic crediting transaction."""
    transaction_id: int
    new_balance: int
    already_processed: bool = False


@dataclass
class VerifyOutcome:
    """Result of server-side capture verification (no credits applied)."""
    success: bool
    message: str
    status_code: int = 200
    order_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"success": self.success, "message": self.message}
        if self.order_id:
            data["orderID"] = self.order_id
        return data


@dataclass
class PaymentEvent:
    """Structured record of one step of payment processing."""
    order_id: str
    status: str
    message: str
    attempt: int
    request_id: str
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "status": self.status,
            "message": self.message,
            "attempt": self.attempt,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================================
# Exceptions
# ============================================================================

class PaymentError(Exception):
    """Base exception for payment errors."""
    retryable = False


class AuthenticationRequiredError(PaymentError):
    """No authenticated user for an operation that needs one."""
    pass


class InvalidPackageError(PaymentError):
    """Package id is not in the provider's catalog."""
    def __init__(self, package_id: Any, provider: str = "paypal"):
        self.package_id = package_id
        self.provider = provider
        super().__init__(f"Invalid {provider} package: {package_id!r}")


class InvalidSignatureError(PaymentError):
    """Webhook signature verification failed."""
    pass


class AmountMismatchError(PaymentError):
    """Captured amount differs from the package price."""
    def __init__(self, captured: Optional[Decimal], expected: Decimal):
        self.captured = captured
        self.expected = expected
        super().__init__(f"Amount mismatch: captured {captured}, expected {expected}")


class DuplicatePaymentError(PaymentError):
    """Order already credited for this user."""
    def __init__(self, existing_id: int):
        self.existing_id = existing_id
        super().__init__(f"Duplicate payment: {existing_id}")


class ProviderError(PaymentError):
    """Error from payment provider."""
    def __init__(self, provider: str, code: str, message: str, retryable: bool = False):
        self.provider = provider
        self.code = code
        self.retryable = retryable
        super().__init__(f"{provider} error [{code}]: {message}")


class LedgerError(PaymentError):
    """Persistence failure while reading or writing the ledger. Safe to retry."""
    retryable = True


class UserNotFoundError(PaymentError):
    """No user row for the external id."""
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class InsufficientCreditsError(PaymentError):
    """User has no credits left to spend."""
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Insufficient credits for user {user_id}")


# ============================================================================
# Abstract Interfaces
# ============================================================================

class ProviderVerifier(ABC):
    """Confirms with a payment provider that an order was captured."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'paypal')."""
        pass

    @abstractmethod
    async def verify_order(self, order_id: str, request_id: str) -> VerificationResult:
        """
        Capture (or look up) an order and report amount and status.

        Must not raise for provider-side failures; report them through
        VerificationResult.retryable instead.
        """
        pass


class PaymentEventSink(ABC):
    """Receives a PaymentEvent for every processing branch."""

    @abstractmethod
    async def record(self, event: PaymentEvent) -> None:
        pass


class LoggingEventSink(PaymentEventSink):
    """Writes payment events to the application log."""

    async def record(self, event: PaymentEvent) -> None:
        level = logging.INFO
        if event.status in (PaymentStatus.FAILED.value, PaymentStatus.AMOUNT_MISMATCH.value):
            level = logging.ERROR
        elif event.status not in (PaymentStatus.COMPLETED.value, "ALREADY_PROCESSED", "PROCESSING"):
            level = logging.WARNING
        logger.log(
            level,
            f"Payment event: order={event.order_id}, status={event.status}, "
            f"attempt={event.attempt}, request={event.request_id}: {event.message}",
            extra={"request_id": event.request_id},
        )


# ============================================================================
# Payment Orchestrator
# ============================================================================

MSG_AUTH_REQUIRED = "Authentication required. Please sign in and try again."
MSG_INVALID_PACKAGE = "Invalid package selected. Please choose a valid credit package."
MSG_AMOUNT_MISMATCH = "Payment amount does not match the selected package. Please contact support."
MSG_ALREADY_PROCESSED = "Payment already processed. Credits were added to your account."
MSG_VERIFICATION_FAILED = "Payment could not be verified. Please contact support if you were charged."
MSG_RETRIES_EXHAUSTED = "Payment failed after multiple attempts. Please contact support if this continues."
MSG_PROCESSING_ERROR = "An unexpected error occurred while processing your payment. Please contact support."


class PaymentOrchestrator:
    """
    Runs the client-confirmed PayPal flow end to end.

    Per attempt: idempotency check, package lookup, provider
    verification under a timeout, amount check, atomic credit.
    Retryable failures (provider 5xx, timeouts, network and
    persistence errors) consume one of max_retries attempts with
    the configured backoff. Every branch emits a PaymentEvent.
    """

    def __init__(
        self,
        ledger,
        verifier: ProviderVerifier,
        event_sink: Optional[PaymentEventSink] = None,
        balance_cache=None,
        max_retries: int = PAYMENT_MAX_RETRIES,
        retry_delays: tuple = PAYMENT_RETRY_DELAYS,
        provider_timeout: float = PAYPAL_TIMEOUT_SECONDS,
        tolerance: Decimal = PAYMENT_AMOUNT_TOLERANCE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.verifier = verifier
        self.events = event_sink or LoggingEventSink()
        self.balance_cache = balance_cache
        self.max_retries = max_retries
        self.retry_delays = retry_delays
        self.provider_timeout = provider_timeout
        self.tolerance = tolerance
        self._sleep = sleep

    @staticmethod
    def new_request_id() -> str:
        return secrets.token_hex(4)

    async def _emit(
        self,
        order_id: str,
        status: str,
        message: str,
        attempt: int,
        request_id: str,
        user_id: Optional[str] = None,
    ) -> None:
        await self.events.record(PaymentEvent(
            order_id=order_id,
            status=status,
            message=message,
            attempt=attempt,
            request_id=request_id,
            user_id=user_id,
        ))

    async def _record_status(self, user_id: str, order_id: str, status: str, reason: str, **kwargs) -> None:
        """Persist a non-terminal status. The caller's outcome stands even if this write fails."""
        try:
            await self.ledger.record_attempt(
                user_id=user_id,
                order_id=order_id,
                status=status,
                reason=reason,
                provider=self.verifier.name,
                **kwargs,
            )
        except LedgerError as e:
            logger.error(f"Failed to record {status} for order {order_id}: {e}")

    async def _invalidate_balance(self, user_id: str) -> None:
        if self.balance_cache is not None:
            await self.balance_cache.invalidate(user_id)

    async def process_payment(self, user_id: Optional[str], order_id: str, package_id: Any) -> PaymentResult:
        """
        Verify a client-approved PayPal order and credit its package.

        Safe to call repeatedly and concurrently for the same order:
        credits are applied at most once per (order_id, user_id).
        """
        from api.services.metrics import PaymentTimer, track_payment_request, track_payment_error

        request_id = self.new_request_id()

        if not user_id:
            await self._emit(order_id, "AUTH_REQUIRED", "No authenticated user", 0, request_id)
            track_payment_request(self.verifier.name, "unauthorized")
            return PaymentResult(
                success=False,
                message=MSG_AUTH_REQUIRED,
                can_retry=False,
                error="AUTHENTICATION_REQUIRED",
            )

        last_error: Optional[Exception] = None

        with PaymentTimer(self.verifier.name):
            for attempt in range(1, self.max_retries + 1):
                await self._emit(order_id, "PROCESSING", f"Attempt {attempt} started", attempt, request_id, user_id)
                try:
                    result = await self._process_attempt(user_id, order_id, package_id, attempt, request_id)
                    track_payment_request(self.verifier.name, "success" if result.success else "failed")
                    return result
                except (ProviderError, LedgerError, OperationTimeoutError) as e:
                    if not e.retryable:
                        return await self._processing_error(user_id, order_id, e, attempt, request_id)
                    last_error = e
                except Exception as e:
                    return await self._processing_error(user_id, order_id, e, attempt, request_id)

                await self._emit(
                    order_id, "RETRY", f"Attempt {attempt} failed: {last_error}", attempt, request_id, user_id
                )
                if attempt < self.max_retries:
                    delay = self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]
                    await self._sleep(delay)

        logger.error(f"Payment {order_id} failed after {self.max_retries} attempts: {last_error}")
        track_payment_request(self.verifier.name, "failed")
        track_payment_error(self.verifier.name, "retries_exhausted")
        await self._record_status(
            user_id, order_id, PaymentStatus.FAILED.value,
            f"Failed after {self.max_retries} attempts: {last_error}",
            request_id=request_id,
        )
        await self._emit(order_id, PaymentStatus.FAILED.value, str(last_error), self.max_retries, request_id, user_id)
        return PaymentResult(
            success=False,
            message=MSG_RETRIES_EXHAUSTED,
            can_retry=False,
            error="MAX_RETRIES_EXCEEDED",
        )

    async def _processing_error(
        self, user_id: str, order_id: str, error: Exception, attempt: int, request_id: str
    ) -> PaymentResult:
        """Unexpected failure: audit it, then answer with a generic result."""
        from api.services.metrics import track_payment_request, track_payment_error

        logger.exception(f"Unexpected error processing payment {order_id} (attempt {attempt}): {error}")
        track_payment_request(self.verifier.name, "failed")
        track_payment_error(self.verifier.name, "processing_error")
        await self._record_status(
            user_id, order_id, PaymentStatus.FAILED.value,
            f"Processing error: {type(error).__name__}: {error}",
            request_id=request_id,
        )
        await self._emit(
            order_id, "PROCESSING_ERROR", type(error).__name__, attempt, request_id, user_id
        )
        return PaymentResult(
            success=False,
            message=MSG_PROCESSING_ERROR,
            can_retry=False,
            error="PROCESSING_ERROR",
        )

    async def _process_attempt(
        self,
        user_id: str,
        order_id: str,
        package_id: Any,
        attempt: int,
        request_id: str,
    ) -> PaymentResult:
        """Single attempt. Returns final results, raises only retryable errors."""
        from api.services.metrics import track_payment_error, credits_granted_total

        # 1. Already credited?
        try:
            await self.ledger.ensure_not_credited(order_id, user_id)
        except DuplicatePaymentError as e:
            balance = await self.ledger.get_balance(user_id)
            await self._emit(order_id, "ALREADY_PROCESSED", "Order already credited", attempt, request_id, user_id)
            return PaymentResult(
                success=True,
                message=MSG_ALREADY_PROCESSED,
                new_balance=balance,
                transaction_id=e.existing_id,
            )

        # 2. Package from the server-side catalog
        try:
            package = require_package(package_id, self.verifier.name)
        except InvalidPackageError as e:
            await self._record_status(
                user_id, order_id, PaymentStatus.INVALID_PACKAGE.value, str(e), request_id=request_id,
            )
            await self._emit(order_id, PaymentStatus.INVALID_PACKAGE.value, str(e), attempt, request_id, user_id)
            track_payment_error(self.verifier.name, "invalid_package")
            return PaymentResult(success=False, message=MSG_INVALID_PACKAGE, can_retry=False, error="INVALID_PACKAGE")

        # 3. Provider verification
        try:
            verification = await with_timeout(
                self.verifier.verify_order(order_id, request_id),
                self.provider_timeout,
                f"{self.verifier.name} verification",
            )
        except OperationTimeoutError as e:
            await self._record_status(
                user_id, order_id, PaymentStatus.TIMEOUT_ERROR.value, str(e), request_id=request_id,
            )
            await self._emit(order_id, PaymentStatus.TIMEOUT_ERROR.value, str(e), attempt, request_id, user_id)
            raise

        if not verification.success:
            status = verification.ledger_status
            await self._record_status(
                user_id, order_id, status, verification.error or "Verification failed",
                amount=verification.amount,
                currency=verification.currency,
                capture_id=verification.capture_id,
                raw_payload={"attempt": attempt, "requestId": request_id, "paypalData": verification.raw},
                request_id=request_id,
            )
            await self._emit(order_id, status, verification.error or "Verification failed", attempt, request_id, user_id)
            if verification.retryable:
                raise ProviderError(
                    self.verifier.name,
                    verification.error_code or "VERIFICATION_FAILED",
                    verification.error or status,
                    retryable=True,
                )
            track_payment_error(self.verifier.name, verification.error_code or "verification_failed")
            return PaymentResult(
                success=False,
                message=MSG_VERIFICATION_FAILED,
                can_retry=False,
                error="VERIFICATION_FAILED",
            )

        # 4. Amount must match the package price
        try:
            check_amount(verification.amount, package.price, self.tolerance)
        except AmountMismatchError as e:
            reason = f"{e} {verification.currency}"
            await self._record_status(
                user_id, order_id, PaymentStatus.AMOUNT_MISMATCH.value, reason,
                amount=verification.amount,
                currency=verification.currency,
                capture_id=verification.capture_id,
                raw_payload={
                    "packageId": package.id,
                    "expectedAmount": str(package.price),
                    "attempt": attempt,
                    "requestId": request_id,
                    "paypalData": verification.raw,
                },
                verified=True,
                request_id=request_id,
            )
            await self._emit(order_id, PaymentStatus.AMOUNT_MISMATCH.value, reason, attempt, request_id, user_id)
            track_payment_error(self.verifier.name, "amount_mismatch")
            return PaymentResult(success=False, message=MSG_AMOUNT_MISMATCH, can_retry=False, error="AMOUNT_MISMATCH")

        # 5. Atomic credit; LedgerError propagates and is retried
        raw_payload = {
            "packageId": package.id,
            "packageName": package.name,
            "credits": package.credits,
            "attempt": attempt,
            "requestId": request_id,
            "paypalData": {
                "captureId": verification.capture_id,
                "status": verification.status,
                "amount": str(verification.amount),
            },
            "processedAt": datetime.now(timezone.utc).isoformat(),
        }
        try:
            outcome = await self.ledger.apply_credit(
                user_id=user_id,
                order_id=order_id,
                credits=package.credits,
                provider=self.verifier.name,
                amount=verification.amount,
                currency=verification.currency,
                capture_id=verification.capture_id,
                raw_payload=raw_payload,
                changed_by="system",
                reason=f"{package.name}: {package.credits} credits",
                request_id=request_id,
            )
        except UserNotFoundError as e:
            await self._record_status(
                user_id, order_id, PaymentStatus.FAILED.value, str(e),
                amount=verification.amount,
                capture_id=verification.capture_id,
                raw_payload=raw_payload,
                verified=True,
                request_id=request_id,
            )
            await self._emit(order_id, PaymentStatus.FAILED.value, str(e), attempt, request_id, user_id)
            track_payment_error(self.verifier.name, "user_not_found")
            return PaymentResult(
                success=False,
                message="Account not found. Please sign in again and contact support.",
                can_retry=False,
                error="USER_NOT_FOUND",
            )
        await self._invalidate_balance(user_id)

        if outcome.already_processed:
            await self._emit(order_id, "ALREADY_PROCESSED", "Credited by a concurrent request", attempt, request_id, user_id)
            return PaymentResult(
                success=True,
                message=MSG_ALREADY_PROCESSED,
                new_balance=outcome.new_balance,
                transaction_id=outcome.transaction_id,
            )

        credits_granted_total.labels(provider=self.verifier.name).inc(package.credits)
        await self._emit(
            order_id, PaymentStatus.COMPLETED.value, f"Added {package.credits} credits",
            attempt, request_id, user_id,
        )
        return PaymentResult(
            success=True,
            message=f"Payment successful! {package.credits} credits added to your account.",
            new_balance=outcome.new_balance,
            transaction_id=outcome.transaction_id,
        )

    async def verify_capture(self, user_id: Optional[str], order_id: str) -> VerifyOutcome:
        """
        Server-side capture check used by the verify endpoint.

        Records what the provider reports without applying credits, so a
        later process_payment for the same order still credits once.
        """
        if not user_id:
            return VerifyOutcome(False, "Unauthorized - Please sign in to verify payment", 401)

        request_id = self.new_request_id()
        try:
            verification = await with_timeout(
                self.verifier.verify_order(order_id, request_id),
                self.provider_timeout,
                f"{self.verifier.name} verification",
            )
        except OperationTimeoutError as e:
            verification = VerificationResult(
                success=False, error=str(e), error_code="TIMEOUT", retryable=True,
            )

        if verification.success:
            await self._record_status(
                user_id, order_id, PaymentStatus.CAPTURED.value, "Payment captured successfully",
                amount=verification.amount,
                currency=verification.currency,
                capture_id=verification.capture_id,
                raw_payload={"requestId": request_id, "paypalData": verification.raw},
                verified=True,
                changed_by=self.verifier.name,
                request_id=request_id,
            )
            await self._emit(order_id, PaymentStatus.CAPTURED.value, "Capture verified", 1, request_id, user_id)
            return VerifyOutcome(True, "Payment verified successfully!", 200, order_id)

        status = verification.ledger_status
        await self._record_status(
            user_id, order_id, status,
            f"Payment verification failed - status: {status}",
            amount=verification.amount,
            currency=verification.currency,
            capture_id=verification.capture_id,
            raw_payload={"requestId": request_id, "error": verification.error, "paypalData": verification.raw},
            changed_by=self.verifier.name,
            request_id=request_id,
        )
        await self._emit(order_id, status, verification.error or status, 1, request_id, user_id)
        message, status_code = verification_failure_message(verification)
        return VerifyOutcome(False, message, status_code)


def require_package(package_id: Any, provider: str = "paypal") -> CreditPackage:
    package = get_package(package_id, provider)
    if package is None:
        raise InvalidPackageError(package_id, provider)
    return package


def check_amount(amount: Optional[Decimal], expected: Decimal, tolerance: Decimal = PAYMENT_AMOUNT_TOLERANCE) -> None:
    """Raise AmountMismatchError unless amount is within tolerance of expected."""
    if amount is None or not amount_matches(amount, expected, tolerance):
        raise AmountMismatchError(amount, expected)


def verification_failure_message(verification: VerificationResult) -> tuple[str, int]:
    """User-facing message and HTTP status for a failed verification."""
    code = verification.error_code
    if code == "NOT_CONFIGURED":
        return "Payment service is temporarily unavailable. Please contact support.", 500
    if code == "TIMEOUT":
        return (
            "Payment verification timed out. Please try again or contact support if the issue persists.",
            408,
        )
    if code == "NETWORK_ERROR":
        return (
            "Unable to connect to payment service. Please check your internet connection and try again.",
            503,
        )
    if code == "JSON_PARSE_ERROR":
        return "Invalid response from payment service. Please try again.", 502
    if code == "HTTP_ERROR":
        if verification.http_status == 404:
            return "Payment order not found. Please start a new payment process.", 400
        if verification.http_status == 422:
            return "Payment cannot be processed. The order may have already been captured or canceled.", 400
        return "Payment verification failed. Please contact support if this issue persists.", 400

    status = verification.status
    if status == "APPROVED":
        return "Payment was approved but not captured. Please try again.", 400
    if status == "CANCELLED":
        return "Payment was cancelled. Please start a new payment.", 400
    if status == "PAYER_ACTION_REQUIRED":
        return "Additional action required from payer. Please complete the payment process.", 400
    if status:
        return f"Payment is in {status} status. Please try again or contact support.", 400
    return "Payment verification failed.", 400
