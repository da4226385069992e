# services/delivery_service.py
"""
Batched ticket delivery.

A run walks the selected recipients in input order, in batches. Each recipient is
handled on its own: ensure token, render the ticket, render the email, dispatch,
record the outcome. A failure for one recipient is recorded and the run moves on.
After each batch a progress event goes out and the pipeline sleeps, except after
the last batch. The run ends with exactly one `complete` event, or exactly one
`error` event if something breaks outside the per-recipient scope.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Iterator, List, Optional, Tuple

from sqlalchemy.engine import Engine

from config import (
    DELIVERY_DEFAULT_BATCH,
    DELIVERY_DEFAULT_DELAY_MS,
    DELIVERY_MAX_BATCH,
    DELIVERY_MAX_DELAY_MS,
    DELIVERY_MIN_BATCH,
    DELIVERY_MIN_DELAY_MS,
)
from domain.errors import DependencyError, FatalPipelineError, ValidationError
from domain.models import DeliveryEvent, DeliveryState, Event, RecipientOutcome, Registration, TicketArtifact
from services import email_service, registration_service, ticket_service, token_service

logger = logging.getLogger(__name__)

ArtifactFn = Callable[[Event, Registration, str], TicketArtifact]
DispatchFn = Callable[[Registration, str, str, TicketArtifact], None]
EmitFn = Callable[[DeliveryEvent], None]


def clamp_batch_size(value: Optional[int]) -> int:
    if value is None:
        return DELIVERY_DEFAULT_BATCH
    return max(DELIVERY_MIN_BATCH, min(DELIVERY_MAX_BATCH, int(value)))


def clamp_delay_ms(value: Optional[int]) -> int:
    if value is None:
        return DELIVERY_DEFAULT_DELAY_MS
    return max(DELIVERY_MIN_DELAY_MS, min(DELIVERY_MAX_DELAY_MS, int(value)))


def select_recipients(
    engine: Engine,
    event_id: int,
    registration_ids: Optional[List[int]] = None,
    count: Optional[int] = None,
) -> List[Registration]:
    """
    Explicit ids, else the next `count` unsent, else all unsent.
    Selected rows that are not pending are reset first; a re-send is always explicit.
    """
    if registration_ids:
        registration_service.reset_delivery(engine, event_id, registration_ids)
        selected = registration_service.select_by_ids(engine, event_id, registration_ids)
    else:
        limit = int(count) if count else None
        selected = registration_service.select_unsent(engine, event_id, limit)
        failed = [r.id for r in selected if r.delivery_state == DeliveryState.FAILED]
        if failed:
            registration_service.reset_delivery(engine, event_id, failed)
            for r in selected:
                if r.id in failed:
                    r.delivery_state = DeliveryState.PENDING
                    r.delivery_error = None

    if not selected:
        raise ValidationError("No registrations found to send emails to")
    return selected


class DeliveryPipeline:
    def __init__(
        self,
        engine: Engine,
        event: Event,
        *,
        subject_template: str,
        body_template: str,
        batch_size: Optional[int] = None,
        delay_ms: Optional[int] = None,
        generate_artifact: ArtifactFn = ticket_service.generate_ticket,
        dispatch: DispatchFn = email_service.send_ticket_email,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.event = event
        self.subject_template = subject_template
        self.body_template = body_template
        self.batch_size = clamp_batch_size(batch_size)
        self.delay_ms = clamp_delay_ms(delay_ms)
        self.generate_artifact = generate_artifact
        self.dispatch = dispatch
        self.sleep = sleep

    def _deliver_one(self, reg: Registration) -> None:
        stage = "token"
        try:
            token = token_service.assign_token_if_absent(self.engine, reg)
            stage = "artifact"
            artifact = self.generate_artifact(self.event, reg, token)
            stage = "render"
            subject, html = email_service.compose(
                self.subject_template, self.body_template, email_service.template_vars(self.event, reg)
            )
            stage = "dispatch"
            self.dispatch(reg, subject, html, artifact)
        except Exception as e:
            raise DependencyError(str(e) or e.__class__.__name__, stage=stage) from e

    def _process(self, reg: Registration) -> RecipientOutcome:
        try:
            self._deliver_one(reg)
        except DependencyError as e:
            logger.warning("Delivery failed registration=%s stage=%s: %s", reg.id, e.stage, e.message)
            registration_service.mark_failed(self.engine, reg.id, e.message)
            return RecipientOutcome(reg.id, reg.name, reg.reg_no, reg.email, DeliveryState.FAILED, e.message)

        registration_service.mark_sent(self.engine, reg.id)
        return RecipientOutcome(reg.id, reg.name, reg.reg_no, reg.email, DeliveryState.SENT)

    def run(self, recipients: List[Registration], emit: EmitFn) -> Tuple[int, int]:
        """Returns (sent, failed). Every outcome is also reported through `emit`."""
        total = len(recipients)
        sent = failed = processed = 0
        try:
            for start in range(0, total, self.batch_size):
                batch = recipients[start:start + self.batch_size]
                records = []
                for reg in batch:
                    outcome = self._process(reg)
                    records.append(outcome.to_dict())
                    processed += 1
                    if outcome.status == DeliveryState.SENT:
                        sent += 1
                    else:
                        failed += 1

                emit(DeliveryEvent("progress", {
                    "processed": processed,
                    "total": total,
                    "sent": sent,
                    "failed": failed,
                    "records": records,
                }))
                if start + self.batch_size < total:
                    self.sleep(self.delay_ms / 1000.0)
        except Exception as e:
            fatal = FatalPipelineError(str(e) or "Failed to send emails")
            logger.exception("Delivery run aborted for event %s", self.event.id)
            emit(DeliveryEvent("error", {"message": fatal.message}))
            return sent, failed

        logger.info("Delivery run event=%s: %d sent, %d failed of %d", self.event.id, sent, failed, total)
        emit(DeliveryEvent("complete", {"sent": sent, "failed": failed, "total": total}))
        return sent, failed


_DONE = object()


def stream_delivery(pipeline: DeliveryPipeline, recipients: List[Registration]) -> Iterator[DeliveryEvent]:
    """
    Run the pipeline on a worker thread and yield its events as they arrive.
    If the consumer stops reading, the worker still finishes the run.
    """
    events: "queue.Queue" = queue.Queue()

    def _work():
        try:
            pipeline.run(recipients, events.put)
        finally:
            events.put(_DONE)

    worker = threading.Thread(target=_work, name=f"delivery-{pipeline.event.id}", daemon=True)
    worker.start()
    while True:
        item = events.get()
        if item is _DONE:
            break
        yield item
