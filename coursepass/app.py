"""課程會籍生命週期引擎 Flask 應用。"""

from __future__ import annotations

import random
from typing import Any, Dict, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from .common.db import PersistenceBackend, build_backend
from .common.errors import EngineError
from .common.services.events import EventChannel, LoggingObserver
from .common.services.logging import configure as configure_logging
from .common.services.logging import log_event
from .common.utils.timeutils import Clock, utcnow
from .config import EngineConfig
from .routes import admin, corporate, memberships, orders, payments
from .services import (
    CheckoutService,
    CompanyDirectory,
    CorporateMemberStore,
    CorporateSubscriptionStore,
    ExpirationSweeper,
    MembershipStore,
    MockPaymentGateway,
    OrderStore,
    PlanCatalog,
)


def build_components(
    config: EngineConfig,
    *,
    backend: Optional[PersistenceBackend] = None,
    clock: Clock = utcnow,
    gateway: Optional[MockPaymentGateway] = None,
    plans: Optional[PlanCatalog] = None,
    companies: Optional[CompanyDirectory] = None,
    events: Optional[EventChannel] = None,
) -> Dict[str, Any]:
    """以同一個儲存後端組裝所有儲存庫；後端只在此處選定一次。"""
    backend = backend or build_backend(config)
    events = events or EventChannel()
    if plans is None:
        plans = PlanCatalog() if config.storage == "memory" else PlanCatalog(config.plans_file)
    if companies is None:
        companies = CompanyDirectory() if config.storage == "memory" else CompanyDirectory(config.companies_file)
    store_kwargs = {"clock": clock, "events": events, "retry_delays": config.persistence_retry_delays}

    order_store = OrderStore(backend, plans, ttl_minutes=config.order_ttl_minutes, **store_kwargs)
    membership_store = MembershipStore(
        backend,
        plans,
        never_activated_policy=config.never_activated_policy,
        single_active_membership=config.single_active_membership,
        **store_kwargs,
    )
    subscription_store = CorporateSubscriptionStore(backend, plans, companies, **store_kwargs)
    member_store = CorporateMemberStore(
        backend,
        subscription_store,
        activation_deadline_days=config.member_activation_deadline_days,
        auto_expire_inactive=config.auto_expire_inactive_members,
        **store_kwargs,
    )
    if gateway is None:
        gateway = MockPaymentGateway(
            success_rate=config.payment_success_rate,
            outage_rate=config.payment_outage_rate,
            min_latency=config.payment_min_latency_seconds,
            max_latency=config.payment_max_latency_seconds,
            timeout=config.payment_timeout_seconds,
            rng=random.Random(),
            clock=clock,
        )

    checkout = CheckoutService(order_store, membership_store, subscription_store, plans, gateway)
    return {
        "events": events,
        "plans": plans,
        "companies": companies,
        "order_store": order_store,
        "membership_store": membership_store,
        "subscription_store": subscription_store,
        "member_store": member_store,
        "gateway": gateway,
        "checkout": checkout,
        "sweeper": ExpirationSweeper(
            order_store,
            membership_store,
            subscription_store,
            member_store,
            checkout=checkout,
            interval_seconds=config.sweep_interval_seconds,
            clock=clock,
        ),
    }


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(EngineError)
    def handle_engine_error(exc: EngineError):
        level = "error" if exc.http_status >= 500 else "info"
        log_event(level, "api.error", code=exc.code, status=exc.http_status, message=exc.message)
        return jsonify(exc.to_dict()), exc.http_status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.name.upper().replace(" ", "_"), "message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        log_event("error", "api.unhandled_exception", error=str(exc), error_type=type(exc).__name__)
        return jsonify({"error": "INTERNAL_ERROR", "message": "Unexpected server error."}), 500


def create_app(
    config: Optional[EngineConfig] = None,
    components: Optional[Dict[str, Any]] = None,
    start_sweeper: Optional[bool] = None,
) -> Flask:
    config = config or EngineConfig.load()
    configure_logging(config.log_level)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["COURSEPASS_CONFIG"] = config

    components = components or build_components(config)
    components["events"].attach(LoggingObserver())
    app.extensions["coursepass_components"] = components

    app.register_blueprint(orders.orders_bp)
    app.register_blueprint(payments.payments_bp)
    app.register_blueprint(memberships.memberships_bp)
    app.register_blueprint(corporate.subscriptions_bp)
    app.register_blueprint(corporate.members_bp)
    app.register_blueprint(admin.admin_bp)
    _register_error_handlers(app)

    if start_sweeper is None:
        start_sweeper = config.sweeper_enabled
    if start_sweeper:
        components["sweeper"].start()

    log_event("info", "app.started", storage=config.storage, sweeper=bool(start_sweeper))
    return app


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=6055, debug=False)


if __name__ == "__main__":
    main()
