"""Classification stage: ``order.validated`` -> ``order.classified``."""

from __future__ import annotations

import logging
from typing import Any, List

from ..classifier import Classifier
from ..models_events import Message, OrderClassified, OrderValidated

logger = logging.getLogger(__name__)


class ClassificationStage:
    def __init__(self, store: Any, classifier: Classifier) -> None:
        self.store = store
        self.classifier = classifier

    async def handle(self, message: Message) -> List[Message]:
        assert isinstance(message, OrderValidated)
        existing = await self.store.get_order(message.event_id)
        if existing is not None:
            return [existing]
        intent, reason = self.classifier.classify(message.request)
        order = await self.store.save_order(
            OrderClassified(
                event_id=message.event_id,
                request=message.request,
                intent=intent,
                reason=reason,
                verification=message.verification,
            )
        )
        logger.info("Classified %s as %s (%s)", order.event_id, order.intent.value, order.reason)
        return [order]
