"""付款結算與「完成訂單並開通」的單一交易單元。"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional
from urllib.parse import urlencode

from ..common.errors import (
    DeadlineExpired,
    EngineError,
    GatewayTimeout,
    InvalidAmount,
    InvalidStateTransition,
    PaymentFailed,
)
from ..common.services.logging import log_event
from ..common.utils.validators import to_decimal
from .corporate_subscription_store import CorporateSubscriptionStore
from .membership_store import MembershipStore
from .order_store import Order, OrderStatus, OrderStore
from .payment_gateway import MockPaymentGateway, PaymentResult
from .plan_catalog import PlanCatalog


ProvisionFn = Callable[[Order], Any]


class CheckoutOutcome(NamedTuple):
    order: Order
    record: Any


class CheckoutService:
    """將付款結果套用到訂單，並開通購買的會籍或企業方案。

    訂單只會與其會籍（或企業訂閱）一同呈現為 COMPLETED；開通失敗時，
    會先把訂單補償為 CANCELED 再把錯誤拋給呼叫端。
    """

    def __init__(
        self,
        orders: OrderStore,
        memberships: MembershipStore,
        subscriptions: CorporateSubscriptionStore,
        plans: PlanCatalog,
        gateway: MockPaymentGateway,
    ) -> None:
        self._orders = orders
        self._memberships = memberships
        self._subscriptions = subscriptions
        self._plans = plans
        self._gateway = gateway

    def complete_order_and_provision(
        self,
        order_id: int,
        payment_id: Optional[str],
        provision_fn: Optional[ProvisionFn] = None,
        *,
        claim_held: bool = False,
    ) -> CheckoutOutcome:
        provision_fn = provision_fn or self.provision
        with self._orders.lock:
            order = self._orders.update_status(
                order_id, OrderStatus.COMPLETED, payment_id=payment_id, claim_held=claim_held
            )
            try:
                record = provision_fn(order)
            except Exception as exc:
                log_event(
                    "error",
                    "order.provision_failed",
                    order_id=order.id,
                    payment_id=payment_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                self._compensate(order, exc)
                raise
            order = self._orders.get_order(order.id)
        log_event("info", "order.provisioned", order_id=order.id, payment_id=payment_id)
        return CheckoutOutcome(order=order, record=record)

    def _compensate(self, order: Order, cause: Exception) -> None:
        try:
            self._orders.compensate_completion(order.id, reason=f"provisioning failed: {type(cause).__name__}")
        except Exception as exc:
            log_event(
                "critical",
                "order.compensation_failed",
                order_id=order.id,
                error=str(exc),
                cause=str(cause),
            )

    def provision(self, order: Order) -> Any:
        """依方案類型建立個人會籍或企業座位方案。"""
        plan = self._plans.require_plan(order.plan_id)
        if plan.is_corporate:
            return self._subscriptions.create_subscription(
                company_id=order.buyer.company_id,
                plan_id=plan.id,
                seats_total=order.quantity,
                amount_paid=order.amount,
                order_id=order.id,
            )
        return self._memberships.create_membership(
            user=order.buyer,
            plan_id=plan.id,
            order_id=order.id,
            amount_paid=order.amount,
        )

    def complete_order(self, order_id: int, payment_id: Optional[str] = None) -> CheckoutOutcome:
        return self.complete_order_and_provision(order_id, payment_id)

    def cancel_order(
        self,
        order_id: int,
        reason: Optional[str] = None,
        payment_id: Optional[str] = None,
        *,
        claim_held: bool = False,
    ) -> Order:
        return self._orders.update_status(
            order_id, OrderStatus.CANCELED, payment_id=payment_id, reason=reason, claim_held=claim_held
        )

    def pay_order(
        self,
        order_id: int,
        amount: Optional[object] = None,
        description: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        with self._claim(order_id) as order:
            if self._orders.is_expired(order):
                self.cancel_order(order.id, reason="expired", claim_held=True)
                raise DeadlineExpired(f"order {order.id} expired before payment", order_id=order.id)
            if amount is not None and to_decimal(amount) != order.amount:
                raise InvalidAmount(
                    f"amount {amount} does not match order amount {order.amount}",
                    order_id=order.id,
                    expected=str(order.amount),
                )

            try:
                result = self._gateway.create_payment(order.id, order.amount, description or f"Order #{order.id}")
            except GatewayTimeout:
                log_event("warning", "order.payment_pending", order_id=order.id)
                return {
                    "order_id": order.id,
                    "payment_id": None,
                    "status": "pending",
                    "payment_url": None,
                }

            if not result.succeeded:
                self.cancel_order(order.id, reason="payment_failed", payment_id=result.payment_id, claim_held=True)
                raise PaymentFailed(order_id=order.id, payment_id=result.payment_id)

            outcome = self.complete_order_and_provision(order.id, result.payment_id, claim_held=True)
        return {
            "order_id": order.id,
            "payment_id": result.payment_id,
            "status": result.status.value,
            "payment_url": build_payment_url(return_url, result),
            "order": outcome.order.to_dict(),
        }

    def reconcile_order(self, order_id: int) -> Dict[str, Any]:
        """以金流帳本結算付款結果不明的 CREATED 訂單。"""
        order = self._orders.get_order(order_id)
        body: Dict[str, Any] = {"order_id": order.id, "reconciled": False, "payment_id": None}
        if order.status != OrderStatus.CREATED:
            body["status"] = order.status.value
            return body

        payments = self._gateway.find_payments(order.id)
        if not payments:
            body["status"] = order.status.value
            return body
        settled = [p for p in payments if p.succeeded]
        payment = settled[-1] if settled else payments[-1]

        with self._claim(order.id):
            if payment.succeeded:
                order = self.complete_order_and_provision(order.id, payment.payment_id, claim_held=True).order
            else:
                order = self.cancel_order(
                    order.id, reason="payment_failed", payment_id=payment.payment_id, claim_held=True
                )
        log_event("info", "order.reconciled", order_id=order.id, payment_id=payment.payment_id, status=order.status.value)
        body.update(reconciled=True, payment_id=payment.payment_id, status=order.status.value)
        return body

    def reconcile_expired(self) -> List[int]:
        """結算已逾期但帳本已有付款紀錄的訂單，回傳已結算的訂單編號。"""
        reconciled: List[int] = []
        for order in self._orders.list_orders(status=OrderStatus.CREATED.value):
            if not self._orders.is_expired(order) or self._orders.has_payment_claim(order.id):
                continue
            if not self._gateway.find_payments(order.id):
                continue
            try:
                if self.reconcile_order(order.id)["reconciled"]:
                    reconciled.append(order.id)
            except EngineError as exc:
                log_event("error", "order.reconcile_failed", order_id=order.id, error=exc.message, code=exc.code)
        return reconciled

    @contextmanager
    def _claim(self, order_id: int) -> Iterator[Order]:
        order = self._orders.claim_for_payment(order_id)
        try:
            yield order
        finally:
            self._orders.release_payment_claim(order.id)


def build_payment_url(return_url: Optional[str], result: PaymentResult) -> Optional[str]:
    if not return_url:
        return None
    query = urlencode(
        {"payment_id": result.payment_id, "status": result.status.value, "order_id": result.order_id}
    )
    separator = "&" if "?" in return_url else "?"
    return f"{return_url}{separator}{query}"
