"""Normalization of provider webhook deliveries into canonical events."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from pydantic import ValidationError

from .exceptions import MalformedWebhookError, WebhookAuthenticationError
from .models import PaymentGateway, WebhookEvent
from .providers import ProviderRegistry

logger = logging.getLogger("billing")


class WebhookNormalizer:
    """Verifies, parses and canonicalizes inbound webhook payloads.

    Normalization never touches storage: it runs before the processing
    transaction is opened so signature checks that call the provider do not
    hold database locks. Deduplication happens later, when the orchestrator
    claims the event inside its transaction.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._registry = registry
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def normalize(
        self,
        provider: PaymentGateway,
        raw_payload: bytes,
        headers: Mapping[str, str],
    ) -> WebhookEvent:
        adapter = self._registry.get(provider)
        if not adapter.verify_webhook_signature(raw_payload, headers):
            logger.warning(
                "Rejected %s webhook with invalid signature",
                provider.value,
                extra={"provider": provider.value},
            )
            raise WebhookAuthenticationError(detail={"provider": provider.value})

        webhook = adapter.parse_webhook(raw_payload)
        event_type = adapter.event_type_for(webhook)
        try:
            payload = adapter.canonical_payload(webhook)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedWebhookError(
                message=f"{provider.value} {webhook.event_name} payload could not be normalized",
                detail={"provider": provider.value, "event_id": webhook.event_id},
            ) from exc

        arrived_at = self._clock()
        try:
            event = WebhookEvent(
                event_type=event_type,
                provider=provider,
                external_event_id=webhook.event_id,
                payload=payload,
                received_at=webhook.occurred_at or arrived_at,
                recorded_at=arrived_at,
            )
        except ValidationError as exc:
            raise MalformedWebhookError(detail={"provider": provider.value}) from exc

        logger.info(
            "Normalized %s webhook %s as %s",
            provider.value,
            event.external_event_id,
            event.event_type.value,
            extra={"provider": provider.value, "event_id": event.external_event_id},
        )
        return event


__all__ = ["WebhookNormalizer"]
