"""Payment gateway port and a configurable fake adapter.

Adapters are synchronous (they wrap blocking HTTP SDKs); the payment coordinator runs them in a
worker thread with a timeout. FakeGateway is used in development and tests.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from uuid import uuid4


@dataclass(frozen=True)
class ChargeResult:
    """Result of an authorize, charge or capture attempt."""

    success: bool
    transaction_id: str | None = None
    requires_action: bool = False
    action_url: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class VoidResult:
    success: bool
    void_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface. Amounts are integer minor units."""

    @abstractmethod
    def authorize(self, amount: int, currency: str, customer_id: str | None, idempotency_key: str) -> ChargeResult:
        """Place a hold for later capture."""
        ...

    @abstractmethod
    def charge(self, amount: int, currency: str, customer_id: str | None, idempotency_key: str) -> ChargeResult:
        """Authorize and capture in one step."""
        ...

    @abstractmethod
    def capture(self, authorization_id: str, amount: int, currency: str) -> ChargeResult:
        ...

    @abstractmethod
    def void(self, authorization_id: str, reason: str) -> VoidResult:
        ...

    @abstractmethod
    def refund(self, transaction_id: str, amount: int, reason: str) -> RefundResult:
        ...


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway.

    Each operation (authorize, charge, capture, void, refund) can be set to "succeed", "fail"
    or "requires_action" (charge/authorize only). Every call is recorded in `calls`.
    """

    def __init__(self) -> None:
        self.outcomes: dict[str, str] = {}
        self.error_code: str = "card_declined"
        self.error_message: str = "Card declined"
        self.action_url: str = "https://pay.example.test/3ds"
        self.delay_seconds: float = 0.0
        self.calls: list[dict] = []

    def configure(
        self,
        operation: str,
        outcome: str = "succeed",
        error_code: str = "card_declined",
        error_message: str = "Card declined",
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.outcomes[operation] = outcome
        self.error_code = error_code
        self.error_message = error_message

    def _outcome(self, method: str, **call) -> str:
        self.calls.append({"method": method, **call})
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        return self.outcomes.get(method, "succeed")

    def _charge_like(self, method: str, prefix: str, **call) -> ChargeResult:
        outcome = self._outcome(method, **call)
        if outcome == "fail":
            return ChargeResult(success=False, error_code=self.error_code, error_message=self.error_message)
        txn = f"fake_{prefix}_{uuid4().hex[:12]}"
        if outcome == "requires_action":
            return ChargeResult(success=False, transaction_id=txn, requires_action=True, action_url=self.action_url)
        return ChargeResult(success=True, transaction_id=txn)

    def authorize(self, amount: int, currency: str, customer_id: str | None, idempotency_key: str) -> ChargeResult:
        return self._charge_like(
            "authorize", "auth", amount=amount, currency=currency,
            customer_id=customer_id, idempotency_key=idempotency_key,
        )

    def charge(self, amount: int, currency: str, customer_id: str | None, idempotency_key: str) -> ChargeResult:
        return self._charge_like(
            "charge", "txn", amount=amount, currency=currency,
            customer_id=customer_id, idempotency_key=idempotency_key,
        )

    def capture(self, authorization_id: str, amount: int, currency: str) -> ChargeResult:
        return self._charge_like(
            "capture", "cap", authorization_id=authorization_id, amount=amount, currency=currency,
        )

    def void(self, authorization_id: str, reason: str) -> VoidResult:
        if self._outcome("void", authorization_id=authorization_id, reason=reason) == "fail":
            return VoidResult(success=False, error_code=self.error_code, error_message=self.error_message)
        return VoidResult(success=True, void_id=f"fake_void_{uuid4().hex[:12]}")

    def refund(self, transaction_id: str, amount: int, reason: str) -> RefundResult:
        if self._outcome("refund", transaction_id=transaction_id, amount=amount, reason=reason) == "fail":
            return RefundResult(success=False, error_code=self.error_code, error_message=self.error_message)
        return RefundResult(success=True, refund_id=f"fake_ref_{uuid4().hex[:12]}")
