from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from mobitraq.db import get_db
from mobitraq.schemas import (
    PointBatchRequest,
    PointBatchResponse,
    PointResultRead,
    SessionCloseResponse,
    SessionRead,
    SessionRollupRead,
    SessionStartRequest,
)
from mobitraq.services.ingestion import (
    STATUS_ACCEPTED,
    STATUS_DUPLICATE,
    STATUS_REJECTED,
    ingest_point_batch,
)
from mobitraq.services.reports import build_session_rollup
from mobitraq.services.sessions import SessionCloseOutcome, end_session, start_session

router = APIRouter(tags=["tracking"])


def build_close_response(outcome: SessionCloseOutcome) -> SessionCloseResponse:
    return SessionCloseResponse(
        session=SessionRead.model_validate(outcome.session),
        rollup=SessionRollupRead(**build_session_rollup(outcome.session, outcome.rollup)),
        closed_alert_ids=[alert.id for alert in outcome.closed_alerts],
        closed_timeline_event_seqs=[segment.seq for segment in outcome.closed_segments],
    )


@router.post(
    "/api/tracking/sessions/start",
    response_model=SessionRead,
    status_code=status.HTTP_201_CREATED,
)
def start_tracking_session(
    payload: SessionStartRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> SessionRead:
    request.state.actor = "employee"
    request.state.employee_id = payload.employee_id
    session = start_session(db, payload.employee_id)
    return SessionRead.model_validate(session)


@router.post("/api/tracking/sessions/{session_id}/end", response_model=SessionCloseResponse)
def end_tracking_session(
    session_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> SessionCloseResponse:
    request.state.actor = "employee"
    outcome = end_session(db, session_id)
    request.state.employee_id = outcome.session.employee_id
    return build_close_response(outcome)


@router.post("/api/tracking/points/batch", response_model=PointBatchResponse)
def upload_point_batch(
    payload: PointBatchRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> PointBatchResponse:
    request.state.actor = "employee"
    employee_ids = {point.employee_id for point in payload.points}
    if len(employee_ids) == 1:
        request.state.employee_id = next(iter(employee_ids))

    results = ingest_point_batch(db, payload.points)
    request.state.flags = {
        "accepted": sum(1 for item in results if item.status == STATUS_ACCEPTED),
        "duplicates": sum(1 for item in results if item.status == STATUS_DUPLICATE),
        "rejected": sum(1 for item in results if item.status == STATUS_REJECTED),
    }
    return PointBatchResponse(
        accepted=request.state.flags["accepted"],
        duplicates=request.state.flags["duplicates"],
        rejected=request.state.flags["rejected"],
        results=[
            PointResultRead(
                index=item.index,
                status=item.status,
                idempotency_key=item.idempotency_key,
                point_id=item.point_id,
                reason=item.reason,
                message=item.message,
                flags=item.flags,
            )
            for item in results
        ],
    )
