"""模擬的第三方金流服務。"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from ..common.errors import GatewayTimeout, GatewayUnavailable, InvalidAmount, NotFound
from ..common.services.logging import log_event
from ..common.utils.timeutils import Clock, to_iso, utcnow
from ..common.utils.validators import to_decimal


class PaymentStatus(str, Enum):
    SUCCESSFUL = "successful"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentResult:
    payment_id: str
    order_id: int
    amount: Decimal
    status: PaymentStatus
    description: str
    created_at: datetime

    @property
    def succeeded(self) -> bool:
        return self.status == PaymentStatus.SUCCESSFUL

    def to_dict(self) -> Dict[str, object]:
        return {
            "payment_id": self.payment_id,
            "order_id": self.order_id,
            "amount": str(self.amount),
            "status": self.status.value,
            "description": self.description,
            "created_at": to_iso(self.created_at),
        }


class MockPaymentGateway:
    """隨機延遲後以隨機結果回應付款請求。

    金流不直接修改訂單或會籍，由呼叫端套用結果。每筆已決定的付款都記入帳本，
    請求逾時的呼叫端可透過 ``find_payments`` 對帳。
    """

    def __init__(
        self,
        *,
        success_rate: float = 0.8,
        outage_rate: float = 0.0,
        min_latency: float = 1.0,
        max_latency: float = 3.0,
        timeout: float = 10.0,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Clock = utcnow,
    ) -> None:
        self.success_rate = success_rate
        self.outage_rate = outage_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.timeout = timeout
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self._ledger: Dict[str, PaymentResult] = {}
        self._lock = threading.Lock()

    def create_payment(self, order_id: int, amount: object, description: str) -> PaymentResult:
        if not order_id:
            raise InvalidAmount("payment needs an order_id", order_id=order_id)
        value = to_decimal(amount)
        if value <= 0:
            raise InvalidAmount("payment amount must be greater than zero", amount=str(value))

        log_event("debug", "payment.request", order_id=order_id, amount=str(value), description=description)
        latency = self._rng.uniform(self.min_latency, self.max_latency)

        if self._rng.random() < self.outage_rate:
            self._sleep(min(latency, self.timeout))
            log_event("warning", "payment.gateway_unavailable", order_id=order_id)
            raise GatewayUnavailable(order_id=order_id)

        status = PaymentStatus.SUCCESSFUL if self._rng.random() < self.success_rate else PaymentStatus.FAILED
        with self._lock:
            payment_id = self._new_payment_id()
            result = PaymentResult(
                payment_id=payment_id,
                order_id=int(order_id),
                amount=value,
                status=status,
                description=description or "",
                created_at=self._clock(),
            )
            self._ledger[payment_id] = result

        if latency > self.timeout:
            # 金流已做出決定，但回應未送達
            self._sleep(self.timeout)
            log_event("warning", "payment.timeout", order_id=order_id, timeout=self.timeout)
            raise GatewayTimeout(order_id=order_id)

        self._sleep(latency)
        log_event("info", "payment.response", order_id=order_id, payment_id=payment_id, status=status.value)
        return result

    def get_payment(self, payment_id: str) -> PaymentResult:
        with self._lock:
            result = self._ledger.get(payment_id)
        if result is None:
            raise NotFound(f"payment {payment_id} not found", payment_id=payment_id)
        return result

    def find_payments(self, order_id: int) -> List[PaymentResult]:
        """回傳 ``order_id`` 的帳本紀錄，由舊到新。"""
        with self._lock:
            results = [r for r in self._ledger.values() if r.order_id == int(order_id)]
        return sorted(results, key=lambda r: r.created_at)

    def _new_payment_id(self) -> str:
        while True:
            payment_id = f"pay_{uuid4().hex}"
            if payment_id not in self._ledger:
                return payment_id
