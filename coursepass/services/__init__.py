"""訂單、付款、會籍與企業座位的生命週期服務模組入口。"""

from .checkout_service import CheckoutOutcome, CheckoutService
from .company_directory import Company, CompanyDirectory
from .corporate_member_store import CardStatus, CorporateMember, CorporateMemberStore
from .corporate_subscription_store import CorporateSubscription, CorporateSubscriptionStore, SubscriptionStatus
from .expiration_sweeper import ExpirationSweeper, SweepReport
from .membership_store import Membership, MembershipStatus, MembershipStore
from .order_store import Order, OrderStatus, OrderStore
from .payment_gateway import MockPaymentGateway, PaymentResult, PaymentStatus
from .plan_catalog import Plan, PlanCatalog
from .record_store import UserRef

__all__ = [
    "CheckoutOutcome",
    "CheckoutService",
    "Company",
    "CompanyDirectory",
    "CardStatus",
    "CorporateMember",
    "CorporateMemberStore",
    "CorporateSubscription",
    "CorporateSubscriptionStore",
    "SubscriptionStatus",
    "ExpirationSweeper",
    "SweepReport",
    "Membership",
    "MembershipStatus",
    "MembershipStore",
    "Order",
    "OrderStatus",
    "OrderStore",
    "MockPaymentGateway",
    "PaymentResult",
    "PaymentStatus",
    "Plan",
    "PlanCatalog",
    "UserRef",
]
