"""Provider adapter contract shared by every payment gateway."""
from __future__ import annotations

import hmac
import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple, TypeVar, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import MalformedWebhookError
from ..models import PaymentGateway, SubscriptionPlan, SubscriptionStatus, WebhookEventType
from ..money import Money

logger = logging.getLogger("billing")


class ProviderFailureKind(str, Enum):
    NOT_IMPLEMENTED = "not_implemented"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ProviderFailure(BaseModel):
    """Typed failure returned by adapters instead of raising."""

    provider: PaymentGateway
    operation: str
    kind: ProviderFailureKind
    message: str = ""

    model_config = ConfigDict(frozen=True)

    @classmethod
    def not_implemented(cls, provider: PaymentGateway, operation: str) -> "ProviderFailure":
        return cls(
            provider=provider,
            operation=operation,
            kind=ProviderFailureKind.NOT_IMPLEMENTED,
            message=f"{provider.value} does not support {operation}",
        )


T = TypeVar("T")
ProviderResult = Union[T, ProviderFailure]


def is_failure(result: object) -> bool:
    return isinstance(result, ProviderFailure)


class ProviderPaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class PaymentSession(BaseModel):
    """Hosted checkout the user is redirected to."""

    provider: PaymentGateway
    reference: str
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PaymentDetails(BaseModel):
    provider: PaymentGateway
    payment_id: str
    status: ProviderPaymentStatus
    amount: Optional[Money] = None
    customer_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class RefundDetails(BaseModel):
    provider: PaymentGateway
    refund_id: str
    payment_id: str
    status: str
    amount: Optional[Money] = None

    model_config = ConfigDict(frozen=True)


class ProviderSubscription(BaseModel):
    provider: PaymentGateway
    subscription_id: str
    status: SubscriptionStatus
    customer_id: Optional[str] = None
    plan_code: Optional[str] = None
    current_period_end: Optional[datetime] = None
    approval_url: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ProviderCustomer(BaseModel):
    provider: PaymentGateway
    customer_id: str
    email: str

    model_config = ConfigDict(frozen=True)


class ProviderWebhook(BaseModel):
    """Provider-native webhook envelope before normalization."""

    provider: PaymentGateway
    event_name: str
    event_id: str
    occurred_at: Optional[datetime] = None
    data: Dict[str, object] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ProviderAdapter(Protocol):
    """Uniform contract every payment gateway integration implements."""

    gateway: PaymentGateway
    event_types: Mapping[str, WebhookEventType]

    def initialize_subscription_payment(
        self,
        *,
        email: str,
        user_id: str,
        plan: SubscriptionPlan,
        plan_code: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[PaymentSession]:
        ...

    def create_payment(
        self,
        *,
        email: str,
        amount: Money,
        reference: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[PaymentSession]:
        ...

    def get_payment(self, payment_id: str) -> ProviderResult[PaymentDetails]:
        ...

    def refund_payment(self, payment_id: str, amount: Optional[Money] = None) -> ProviderResult[RefundDetails]:
        ...

    def create_subscription(
        self,
        *,
        customer_id: str,
        plan_code: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ProviderResult[ProviderSubscription]:
        ...

    def get_subscription(self, subscription_id: str) -> ProviderResult[ProviderSubscription]:
        ...

    def cancel_subscription(self, subscription_id: str) -> ProviderResult[ProviderSubscription]:
        ...

    def change_plan(self, subscription_id: str, new_plan_code: str) -> ProviderResult[ProviderSubscription]:
        ...

    def get_or_create_customer(
        self, *, email: str, user_id: str, name: Optional[str] = None
    ) -> ProviderResult[ProviderCustomer]:
        ...

    def verify_payment(self, reference: str) -> ProviderResult[PaymentDetails]:
        ...

    def ensure_plan_exists(self, plan: SubscriptionPlan) -> ProviderResult[str]:
        ...

    def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        ...

    def parse_webhook(self, raw_payload: bytes) -> ProviderWebhook:
        ...

    def event_type_for(self, webhook: ProviderWebhook) -> WebhookEventType:
        ...

    def canonical_payload(self, webhook: ProviderWebhook) -> Dict[str, object]:
        ...


class PlanCodeCache:
    """Thread-safe memo of provider plan codes keyed by ``(provider, plan_id)``."""

    def __init__(self) -> None:
        self._codes: Dict[Tuple[PaymentGateway, str], str] = {}
        self._lock = threading.Lock()

    def get(self, provider: PaymentGateway, plan_id: str) -> Optional[str]:
        with self._lock:
            return self._codes.get((provider, plan_id))

    def put(self, provider: PaymentGateway, plan_id: str, code: str) -> None:
        with self._lock:
            self._codes[(provider, plan_id)] = code

    def resolve(
        self,
        provider: PaymentGateway,
        plan: SubscriptionPlan,
        create: Callable[[SubscriptionPlan], ProviderResult[str]],
    ) -> ProviderResult[str]:
        existing = plan.plan_code_for(provider) or self.get(provider, plan.id)
        if existing:
            self.put(provider, plan.id, existing)
            return existing
        created = create(plan)
        if not is_failure(created):
            self.put(provider, plan.id, created)
        return created

    def clear(self) -> None:
        with self._lock:
            self._codes.clear()


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over a plain mapping."""

    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def hmac_hexdigest_matches(secret: Optional[str], payload: bytes, signature: Optional[str], digestmod) -> bool:
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, digestmod).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def load_json_object(provider: PaymentGateway, raw_payload: bytes) -> Dict[str, object]:
    try:
        body = json.loads(raw_payload)
    except (TypeError, ValueError) as exc:
        raise MalformedWebhookError(message=f"{provider.value} webhook is not valid JSON") from exc
    if not isinstance(body, dict):
        raise MalformedWebhookError(message=f"{provider.value} webhook must be a JSON object")
    return body


def to_utc(value: object) -> Optional[datetime]:
    """Parse epoch seconds or ISO-8601 strings into aware UTC datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def iso_or_none(value: object) -> Optional[str]:
    parsed = to_utc(value)
    return parsed.isoformat() if parsed else None


def metadata_strings(value: object) -> Dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


def prune(payload: Dict[str, object]) -> Dict[str, object]:
    return {key: value for key, value in payload.items() if value is not None and value != ""}


class BaseProviderAdapter:
    """Shared plumbing for adapters: plan-code memoisation and event typing."""

    gateway: PaymentGateway
    event_types: Mapping[str, WebhookEventType] = {}

    def __init__(self, *, plan_codes: Optional[PlanCodeCache] = None) -> None:
        self._plan_codes = plan_codes or PlanCodeCache()

    def ensure_plan_exists(self, plan: SubscriptionPlan) -> ProviderResult[str]:
        return self._plan_codes.resolve(self.gateway, plan, self._create_plan)

    def _create_plan(self, plan: SubscriptionPlan) -> ProviderResult[str]:
        return ProviderFailure.not_implemented(self.gateway, "ensure_plan_exists")

    def event_type_for(self, webhook: ProviderWebhook) -> WebhookEventType:
        return self.event_types.get(webhook.event_name, WebhookEventType.UNKNOWN)

    def _failure(self, operation: str, kind: ProviderFailureKind, message: str) -> ProviderFailure:
        logger.warning(
            "Provider %s %s failed (%s): %s",
            self.gateway.value,
            operation,
            kind.value,
            message,
            extra={"provider": self.gateway.value, "operation": operation},
        )
        return ProviderFailure(provider=self.gateway, operation=operation, kind=kind, message=message)


class HttpProviderAdapter(BaseProviderAdapter):
    """Adapter base for REST gateways called through ``httpx``."""

    def __init__(
        self,
        *,
        base_url: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
        plan_codes: Optional[PlanCodeCache] = None,
    ) -> None:
        super().__init__(plan_codes=plan_codes)
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def _auth_headers(self) -> ProviderResult[Dict[str, str]]:
        return {}

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, object]] = None,
        params: Optional[Dict[str, object]] = None,
        headers: Optional[Dict[str, str]] = None,
        missing_ok: bool = False,
    ) -> ProviderResult[Optional[Dict[str, object]]]:
        auth = self._auth_headers()
        if is_failure(auth):
            return auth
        request_headers = {"Content-Type": "application/json", **auth, **(headers or {})}
        try:
            response = self._client.request(method, path, json=json_body, params=params, headers=request_headers)
        except httpx.HTTPError as exc:
            return self._failure(operation, ProviderFailureKind.TRANSIENT, str(exc))

        if missing_ok and response.status_code == 404:
            return None
        if response.status_code == 429 or response.status_code >= 500:
            return self._failure(operation, ProviderFailureKind.TRANSIENT, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            return self._failure(
                operation,
                ProviderFailureKind.PERMANENT,
                f"HTTP {response.status_code}: {response.text[:200]}",
            )
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return self._failure(operation, ProviderFailureKind.PERMANENT, "response was not JSON")
        if not isinstance(body, dict):
            return self._failure(operation, ProviderFailureKind.PERMANENT, "unexpected response shape")
        return body


class UnsupportedPaymentsMixin:
    """Answers every payment verb with a NOT_IMPLEMENTED failure."""

    gateway: PaymentGateway

    def _unsupported(self, operation: str) -> ProviderFailure:
        return ProviderFailure.not_implemented(self.gateway, operation)

    def initialize_subscription_payment(self, **kwargs) -> ProviderFailure:
        return self._unsupported("initialize_subscription_payment")

    def create_payment(self, **kwargs) -> ProviderFailure:
        return self._unsupported("create_payment")

    def get_payment(self, payment_id: str) -> ProviderFailure:
        return self._unsupported("get_payment")

    def refund_payment(self, payment_id: str, amount: Optional[Money] = None) -> ProviderFailure:
        return self._unsupported("refund_payment")

    def create_subscription(self, **kwargs) -> ProviderFailure:
        return self._unsupported("create_subscription")

    def get_subscription(self, subscription_id: str) -> ProviderFailure:
        return self._unsupported("get_subscription")

    def cancel_subscription(self, subscription_id: str) -> ProviderFailure:
        return self._unsupported("cancel_subscription")

    def change_plan(self, subscription_id: str, new_plan_code: str) -> ProviderFailure:
        return self._unsupported("change_plan")

    def get_or_create_customer(self, **kwargs) -> ProviderFailure:
        return self._unsupported("get_or_create_customer")

    def verify_payment(self, reference: str) -> ProviderFailure:
        return self._unsupported("verify_payment")


class ProviderRegistry:
    """Resolves a :class:`PaymentGateway` to its adapter."""

    def __init__(self, adapters: Optional[Mapping[PaymentGateway, ProviderAdapter]] = None) -> None:
        self._adapters: Dict[PaymentGateway, ProviderAdapter] = dict(adapters or {})

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.gateway] = adapter

    def get(self, provider: PaymentGateway) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError as exc:
            raise LookupError(f"No adapter registered for {provider.value}") from exc

    def __contains__(self, provider: object) -> bool:
        return provider in self._adapters

    def providers(self) -> Tuple[PaymentGateway, ...]:
        return tuple(self._adapters)

