"""
Payment and credit-ledger schemas.

Request bodies use the camelCase field names the web client sends; result
models serialise back to camelCase via ``model_dump(by_alias=True)``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OwnerType(str, Enum):
    """Ledger owner kinds"""

    USER = "user"
    ORG = "org"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ScheduleStatus(str, Enum):
    """Installment schedule states; COMPLETED and DEFAULTED are terminal"""

    ACTIVE = "active"
    OUTSTANDING = "outstanding"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"

    @property
    def is_terminal(self) -> bool:
        return self in (ScheduleStatus.COMPLETED, ScheduleStatus.DEFAULTED)


class CheckoutKind(str, Enum):
    """Closed set of checkout/subscription tags carried in Stripe metadata.type"""

    USER_SUBSCRIPTION = "user_subscription"
    ORG_PLATFORM_SUBSCRIPTION = "org_platform_subscription"
    CREDIT_INSTALLMENT = "credit_installment"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "CheckoutKind":
        if not value:
            return cls.UNKNOWN
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN


class MaintenanceAction(str, Enum):
    ALL = "all"
    EXPIRE = "expire"
    ROLLOVER = "rollover"
    CLEANUP = "cleanup"
    STATS = "stats"


# Metadata tag each one-time purchase flow stamps on its checkout session
PURCHASE_TAGS: dict[OwnerType, str] = {
    OwnerType.USER: "user_credit_topup",
    OwnerType.ORG: "org_credit_purchase",
}


@dataclass(frozen=True)
class PayerIdentity:
    """Who is confirming a purchase, and which ledger owner it credits."""

    owner_type: OwnerType
    owner_id: str
    acting_user_id: str

    @classmethod
    def for_user(cls, user_id: str) -> "PayerIdentity":
        return cls(owner_type=OwnerType.USER, owner_id=user_id, acting_user_id=user_id)

    @classmethod
    def for_org(cls, organization_id: str, acting_user_id: str) -> "PayerIdentity":
        return cls(owner_type=OwnerType.ORG, owner_id=organization_id, acting_user_id=acting_user_id)


@dataclass
class NotificationOutcome:
    """Result of a best-effort notification attempt. Never raised, only returned."""

    recipient_id: str
    sent: bool
    skipped_duplicate: bool = False
    error: str | None = None


# ==================== Requests ====================


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ConfirmPurchaseRequest(_CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1, description="Stripe checkout session id")


class OrgConfirmPurchaseRequest(ConfirmPurchaseRequest):
    organization_id: str = Field(..., alias="organizationId", min_length=1)


class CreditCheckoutRequest(_CamelModel):
    package_id: str = Field(..., alias="packageId", min_length=1)


class OrgCreditCheckoutRequest(CreditCheckoutRequest):
    organization_id: str = Field(..., alias="organizationId", min_length=1)


class InstallmentCheckoutRequest(CreditCheckoutRequest):
    installment_months: int = Field(..., alias="installmentMonths", ge=2, le=24)


class MaintenanceRequest(BaseModel):
    action: MaintenanceAction = MaintenanceAction.ALL

    @field_validator("action", mode="before")
    @classmethod
    def _lowercase_action(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


# ==================== Results ====================


class ConfirmPurchaseResult(_CamelModel):
    """Outcome of confirming a checkout session against the ledger"""

    success: bool
    credits_added: int = Field(0, alias="creditsAdded")
    already_processed: bool | None = Field(None, alias="alreadyProcessed")
    batch_id: str | None = Field(None, alias="batchId")
    status: str | None = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CheckoutSessionResult(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    url: str | None = None
    purchase_id: str | None = Field(None, alias="purchaseId")
    installment_months: int | None = Field(None, alias="installmentMonths")
    per_installment_cents: int | None = Field(None, alias="perInstallment")
    total_charged_cents: int | None = Field(None, alias="totalCharged")

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class InstallmentProgress(BaseModel):
    installments_paid: int
    installment_count: int
    schedule_complete: bool


class WebhookProcessingResult(BaseModel):
    """Webhook processing result"""

    success: bool
    event_type: str
    event_id: str
    message: str
    duplicate: bool = False
    processed_at: datetime


class ExpiryNotificationSummary(BaseModel):
    users_notified: int = 0
    org_admins_notified: int = 0
    skipped_duplicates: int = 0
    errors: list[str] = Field(default_factory=list)


class LedgerStats(BaseModel):
    user_active_batches: int = 0
    user_remaining_credits: int = 0
    user_original_credits: int = 0
    user_utilization_rate: float = 0.0
    org_active_batches: int = 0
    org_remaining_credits: int = 0
    org_original_credits: int = 0


class MaintenanceSummary(BaseModel):
    """Aggregated result of a maintenance run. Per-owner failures land in errors."""

    action: MaintenanceAction
    started_at: datetime
    finished_at: datetime | None = None
    expired_batches: int | None = None
    rolled_over_owners: int | None = None
    rolled_over_credits: int | None = None
    archivable_batches: int | None = None
    stats: LedgerStats | None = None
    errors: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class RolloverReport:
    owners_processed: int = 0
    credits_rolled_over: int = 0
    errors: list[str] = field(default_factory=list)
