"""HTTP routes for sequence management, enrollment, and provider callbacks.

Handlers are plain ``def`` functions: they call the blocking SQLite stores,
so FastAPI runs them in its worker thread pool.  Domain errors are mapped to
status codes by :func:`register_exception_handlers`.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from sequencer.api.schemas import (
    DeliveryEventRequest,
    EnrollRequest,
    KeywordJoinRequest,
    OptOutRequest,
    ReorderRequest,
    StageChangeRequest,
    StopRequest,
)
from sequencer.delivery import verify_unsubscribe_token
from sequencer.domain.errors import (
    EnrollmentNotFoundError,
    InvalidTransitionError,
    SequenceNotFoundError,
    SequencerError,
    SequenceValidationError,
    StepNotFoundError,
)
from sequencer.domain.models import (
    AutoEnrollResult,
    Contact,
    Enrollment,
    EnrollmentPage,
    EnrollSummary,
    Sequence,
    SequenceDetail,
    SequenceDraft,
    SequenceUpdate,
    Step,
    StepDraft,
    StepStats,
    StepUpdate,
    Workspace,
)
from sequencer.domain.types import EnrollmentStatus, SequenceStatus
from sequencer.state_machine import EnrollmentEvent, EnrollmentStateMachine

logger = structlog.get_logger()

router = APIRouter()

MAX_ENROLLMENTS_PAGE = 50
CONTACT_ENROLLMENTS_LIMIT = 20


def _services(request: Request) -> dict[str, Any]:
    services: dict[str, Any] = request.app.state.services
    return services


# ---------------------------------------------------------------------------
# Sequences
# ---------------------------------------------------------------------------


@router.post("/sequences", status_code=201)
def create_sequence(draft: SequenceDraft, request: Request) -> Sequence:
    sequence: Sequence = _services(request)["sequence_store"].create_sequence(draft)
    return sequence


@router.get("/sequences")
def list_sequences(
    request: Request,
    workspace_id: str | None = None,
    status: SequenceStatus | None = None,
) -> list[Sequence]:
    sequences: list[Sequence] = _services(request)["sequence_store"].list_sequences(
        workspace_id, status
    )
    return sequences


@router.get("/sequences/{sequence_id}")
def get_sequence(sequence_id: str, request: Request) -> SequenceDetail:
    detail: SequenceDetail = _services(request)["sequence_store"].get_sequence_detail(sequence_id)
    return detail


@router.patch("/sequences/{sequence_id}")
def update_sequence(sequence_id: str, update: SequenceUpdate, request: Request) -> Sequence:
    sequence: Sequence = _services(request)["sequence_store"].update_sequence(sequence_id, update)
    return sequence


@router.delete("/sequences/{sequence_id}", status_code=204)
def delete_sequence(sequence_id: str, request: Request) -> Response:
    _services(request)["sequence_store"].delete_sequence(sequence_id)
    return Response(status_code=204)


@router.post("/sequences/{sequence_id}/activate")
def activate_sequence(sequence_id: str, request: Request) -> Sequence:
    sequence: Sequence = _services(request)["sequence_store"].activate(sequence_id)
    return sequence


@router.post("/sequences/{sequence_id}/pause")
def pause_sequence(sequence_id: str, request: Request) -> Sequence:
    sequence: Sequence = _services(request)["sequence_store"].pause(sequence_id)
    return sequence


@router.post("/sequences/{sequence_id}/archive")
def archive_sequence(sequence_id: str, request: Request) -> Sequence:
    sequence: Sequence = _services(request)["sequence_store"].archive(sequence_id)
    return sequence


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


@router.post("/sequences/{sequence_id}/steps", status_code=201)
def add_step(sequence_id: str, draft: StepDraft, request: Request) -> Step:
    step: Step = _services(request)["sequence_store"].add_step(sequence_id, draft)
    return step


@router.post("/sequences/{sequence_id}/steps/reorder")
def reorder_steps(sequence_id: str, body: ReorderRequest, request: Request) -> list[Step]:
    steps: list[Step] = _services(request)["sequence_store"].reorder_steps(
        sequence_id, body.step_ids
    )
    return steps


@router.patch("/steps/{step_id}")
def update_step(step_id: str, update: StepUpdate, request: Request) -> Step:
    step: Step = _services(request)["sequence_store"].update_step(step_id, update)
    return step


@router.delete("/steps/{step_id}", status_code=204)
def delete_step(step_id: str, request: Request) -> Response:
    _services(request)["sequence_store"].delete_step(step_id)
    return Response(status_code=204)


@router.get("/sequences/{sequence_id}/step-stats")
def step_stats(sequence_id: str, request: Request) -> list[StepStats]:
    services = _services(request)
    sequence = services["sequence_store"].get_sequence(sequence_id)
    stats: list[StepStats] = services["step_log_store"].step_stats(sequence)
    return stats


# ---------------------------------------------------------------------------
# Enrollments
# ---------------------------------------------------------------------------


@router.post("/sequences/{sequence_id}/enrollments")
def enroll_contacts(sequence_id: str, body: EnrollRequest, request: Request) -> EnrollSummary:
    summary: EnrollSummary = _services(request)["trigger_listener"].enroll(
        sequence_id, body.contact_ids
    )
    return summary


@router.post("/sequences/{sequence_id}/enrollments/audience")
def enroll_audience(sequence_id: str, request: Request) -> EnrollSummary:
    summary: EnrollSummary = _services(request)["trigger_listener"].enroll_by_audience(
        sequence_id
    )
    return summary


@router.get("/sequences/{sequence_id}/enrollments")
def list_enrollments(
    sequence_id: str,
    request: Request,
    status: EnrollmentStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_ENROLLMENTS_PAGE),
) -> EnrollmentPage:
    services = _services(request)
    services["sequence_store"].get_sequence(sequence_id)
    enrollment_page: EnrollmentPage = services["enrollment_store"].list_for_sequence(
        sequence_id, status=status, page=page, limit=limit
    )
    return enrollment_page


@router.get("/contacts/{contact_id}/enrollments")
def contact_enrollments(contact_id: str, request: Request) -> list[Enrollment]:
    enrollments: list[Enrollment] = _services(request)["enrollment_store"].list_for_contact(
        contact_id, limit=CONTACT_ENROLLMENTS_LIMIT
    )
    return enrollments


@router.post("/enrollments/{enrollment_id}/stop")
def stop_enrollment(
    enrollment_id: str,
    request: Request,
    body: StopRequest | None = None,
) -> Enrollment:
    """Stop one active enrollment (manual removal from a sequence)."""
    services = _services(request)
    store = services["enrollment_store"]
    reason = body.reason if body is not None else "manual"

    enrollment = store.get(enrollment_id)
    EnrollmentStateMachine(enrollment.status, enrollment.current_step).trigger(
        EnrollmentEvent.STOP
    )
    if not store.stop(enrollment_id, services["clock"](), reason):
        # Finished or opted out between the read and the write.
        current = store.get(enrollment_id)
        raise InvalidTransitionError(current.status, EnrollmentEvent.STOP)

    logger.info("Enrollment stopped", enrollment_id=enrollment_id, reason=reason)
    updated: Enrollment = store.get(enrollment_id)
    return updated


# ---------------------------------------------------------------------------
# Contact mirror and domain events
# ---------------------------------------------------------------------------


@router.put("/contacts/{contact_id}")
def put_contact(contact_id: str, contact: Contact, request: Request) -> Contact:
    if contact.id != contact_id:
        raise HTTPException(status_code=400, detail="Contact id does not match the path")
    stored: Contact = _services(request)["contact_store"].upsert_contact(contact)
    return stored


@router.put("/workspaces/{workspace_id}")
def put_workspace(workspace_id: str, workspace: Workspace, request: Request) -> Workspace:
    if workspace.id != workspace_id:
        raise HTTPException(status_code=400, detail="Workspace id does not match the path")
    stored: Workspace = _services(request)["contact_store"].upsert_workspace(workspace)
    return stored


@router.post("/contacts/{contact_id}/opt-out")
def opt_out_contact(
    contact_id: str,
    request: Request,
    body: OptOutRequest | None = None,
) -> dict[str, int]:
    """Mark the contact opted out and end all of its active enrollments."""
    services = _services(request)
    reason = body.reason if body is not None else "contact_opted_out"
    changed: int = services["delivery_events"].on_contact_opted_out(contact_id, reason)
    return {"enrollments_opted_out": changed}


@router.get("/u/{token}")
@router.post("/unsubscribe/{token}")
def unsubscribe(token: str, request: Request) -> dict[str, int]:
    """Opt a contact out through a signed unsubscribe link.

    ``GET /u/{token}`` is the path the delivered links point at.
    """
    services = _services(request)
    secret = services["settings"].unsubscribe_secret.get_secret_value()
    contact_id = verify_unsubscribe_token(token, secret) if secret else None
    if contact_id is None:
        raise HTTPException(status_code=400, detail="Invalid unsubscribe link")
    changed: int = services["delivery_events"].on_contact_opted_out(
        contact_id, "unsubscribe_link"
    )
    logger.info("Contact unsubscribed", contact_id=contact_id, enrollments=changed)
    return {"enrollments_opted_out": changed}


@router.post("/events/delivery")
def delivery_event(body: DeliveryEventRequest, request: Request) -> dict[str, int]:
    changed: int = _services(request)["delivery_events"].on_delivery_event(
        body.contact_id,
        body.enrollment_id,
        body.step_order,
        body.event,
        occurred_at=body.occurred_at,
    )
    return {"updated": changed}


@router.post("/events/contact-created")
def contact_created(contact: Contact, request: Request) -> AutoEnrollResult:
    services = _services(request)
    services["contact_store"].upsert_contact(contact)
    result: AutoEnrollResult = services["trigger_listener"].on_contact_created(contact)
    return result


@router.post("/events/keyword-join")
def keyword_join(body: KeywordJoinRequest, request: Request) -> AutoEnrollResult:
    services = _services(request)
    services["contact_store"].upsert_contact(body.contact)
    result: AutoEnrollResult = services["trigger_listener"].on_keyword_join(
        body.contact, body.keyword
    )
    return result


@router.post("/events/stage-change")
def stage_change(body: StageChangeRequest, request: Request) -> AutoEnrollResult:
    services = _services(request)
    contact = body.contact.model_copy(update={"stage": body.stage})
    services["contact_store"].upsert_contact(contact)
    result: AutoEnrollResult = services["trigger_listener"].on_stage_change(contact, body.stage)
    return result


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: list[tuple[type[SequencerError], int]] = [
    (SequenceNotFoundError, 404),
    (StepNotFoundError, 404),
    (EnrollmentNotFoundError, 404),
    (SequenceValidationError, 400),
    (InvalidTransitionError, 409),
]


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors to JSON error responses on *app*."""

    async def handle_domain_error(request: Request, exc: Exception) -> JSONResponse:
        status_code = 500
        for error_type, code in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                status_code = code
                break
        if status_code == 500:
            logger.error("Unmapped domain error", error=str(exc), path=request.url.path)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    app.add_exception_handler(SequencerError, handle_domain_error)
