"""Detention scheduling API router."""

import logging
from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.auth.dependencies import get_current_user, resolve_active_user
from discipline.auth.models import ADMIN_ROLES
from discipline.auth.rbac import STAFF_ROLES, require_roles
from discipline.auth.schemas import CurrentUser
from discipline.core.enums import QueueStatus, SessionStatus
from discipline.core.exceptions import ServiceError
from discipline.core.notifications import Outbox
from discipline.db.session import get_db

from . import service
from .dependencies import DetentionServices, get_detention_services
from .schemas import (
    AssignStudentRequest,
    AttendanceResponse,
    AttendanceUpdate,
    AutoAssignResponse,
    DetentionRuleCreate,
    DetentionRuleResponse,
    DetentionRuleUpdate,
    DetentionSessionCreate,
    DetentionSessionDetail,
    DetentionSessionResponse,
    DetentionSessionStatusUpdate,
    DetentionSessionUpdate,
    DrainSummary,
    EvaluateStudentRequest,
    PlacementResponse,
    QualifyingStudentResponse,
    QueueEntryResponse,
    SessionsCreatedResponse,
    SessionStatusChangeResponse,
    SessionUpdatedResponse,
    StudentDetentionHistoryItem,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/detentions", tags=["detentions"])


# ----- Rules -----
@router.get("/rules", response_model=List[DetentionRuleResponse])
async def list_rules(
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
) -> List[DetentionRuleResponse]:
    """Detention rules in evaluation order (ascending min_points)."""
    return await service.list_rules(db, current_user.tenant_id, active_only=active_only)


@router.post("/rules", response_model=DetentionRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    payload: DetentionRuleCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
) -> DetentionRuleResponse:
    try:
        return await service.create_rule(db, current_user.tenant_id, payload, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/rules/defaults", response_model=List[DetentionRuleResponse])
async def seed_default_rules(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
) -> List[DetentionRuleResponse]:
    """Add the standard rules (3+ incidents, 10+ points, high severity) the school does not have yet."""
    return await service.seed_default_rules(db, current_user.tenant_id, current_user.id)


@router.put("/rules/{rule_id}", response_model=DetentionRuleResponse)
async def update_rule(
    rule_id: UUID,
    payload: DetentionRuleUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
) -> DetentionRuleResponse:
    try:
        return await service.update_rule(db, current_user.tenant_id, rule_id, payload, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/rules/{rule_id}", response_model=DetentionRuleResponse)
async def deactivate_rule(
    rule_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
) -> DetentionRuleResponse:
    """Deactivate a rule. Rules are kept for audit."""
    try:
        return await service.deactivate_rule(db, current_user.tenant_id, rule_id, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ----- Sessions -----
@router.get("/sessions", response_model=List[DetentionSessionResponse])
async def list_sessions(
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    session_status: Optional[SessionStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    services: DetentionServices = Depends(get_detention_services),
) -> List[DetentionSessionResponse]:
    return await service.list_sessions(
        db,
        current_user.tenant_id,
        services,
        from_date=from_date,
        to_date=to_date,
        session_status=session_status.value if session_status else None,
    )


@router.post("/sessions", response_model=SessionsCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_sessions(
    payload: DetentionSessionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> SessionsCreatedResponse:
    """Create a session (or a recurring batch) and fill it from the waiting queue."""
    outbox = Outbox(current_user.tenant_id)
    try:
        response = await service.create_sessions(db, current_user.tenant_id, payload, services, outbox, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    await services.dispatcher.dispatch(db, outbox)
    return response


@router.get("/sessions/{session_id}", response_model=DetentionSessionDetail)
async def get_session(
    session_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    services: DetentionServices = Depends(get_detention_services),
) -> DetentionSessionDetail:
    try:
        return await service.get_session_detail(db, current_user.tenant_id, session_id, services)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.patch("/sessions/{session_id}", response_model=SessionUpdatedResponse)
async def update_session(
    session_id: UUID,
    payload: DetentionSessionUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> SessionUpdatedResponse:
    outbox = Outbox(current_user.tenant_id)
    try:
        response = await service.update_session(
            db, current_user.tenant_id, session_id, payload, services, outbox, current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    await services.dispatcher.dispatch(db, outbox)
    return response


@router.post("/sessions/{session_id}/status", response_model=SessionStatusChangeResponse)
async def change_session_status(
    session_id: UUID,
    payload: DetentionSessionStatusUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> SessionStatusChangeResponse:
    """Move a session forward (in_progress, completed, cancelled)."""
    outbox = Outbox(current_user.tenant_id)
    try:
        response = await service.change_session_status(
            db, current_user.tenant_id, session_id, payload.status.value, services, outbox, current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    await services.dispatcher.dispatch(db, outbox)
    return response


@router.post("/sessions/{session_id}/assign", response_model=PlacementResponse)
async def assign_student(
    session_id: UUID,
    payload: AssignStudentRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> PlacementResponse:
    """Assign a student to this session. A full session puts the student on the queue instead."""
    outbox = Outbox(current_user.tenant_id)
    try:
        result = await services.engine.assign(
            db,
            current_user.tenant_id,
            payload.student_id,
            outbox,
            session_id=session_id,
            reason=payload.reason,
            incident_id=payload.incident_id,
            assigned_by=current_user.id,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    response = service.placement_to_response(result)
    await services.dispatcher.dispatch(db, outbox)
    return response


@router.post("/sessions/{session_id}/auto-assign", response_model=AutoAssignResponse)
async def auto_assign(
    session_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> AutoAssignResponse:
    """Bulk-fill the session with students over the points threshold; overflow is queued."""
    outbox = Outbox(current_user.tenant_id)
    try:
        result = await services.engine.auto_assign_batch(
            db, current_user.tenant_id, session_id, outbox, assigned_by=current_user.id
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    await services.dispatcher.dispatch(db, outbox)
    return AutoAssignResponse(
        session_id=result.session_id,
        qualifying=result.qualifying,
        assigned=result.assigned,
        queued=result.queued,
        skipped=result.skipped,
        failed=result.failed,
    )


@router.post("/sessions/{session_id}/process-queue", response_model=DrainSummary)
async def process_queue(
    session_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> DrainSummary:
    outbox = Outbox(current_user.tenant_id)
    try:
        result = await services.queue.drain(db, current_user.tenant_id, session_id, outbox, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    await services.dispatcher.dispatch(db, outbox)
    return DrainSummary(
        session_id=result.session_id,
        available_slots=result.available_slots,
        assigned=result.assigned,
        skipped=result.skipped,
        failed=result.failed,
    )


# ----- Assignments -----
@router.post("/assignments/{assignment_id}/attendance", response_model=AttendanceResponse)
async def record_attendance(
    assignment_id: UUID,
    payload: AttendanceUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> AttendanceResponse:
    """Record attended/absent/late/excused/dismissed. Absent and dismissed reschedule automatically."""
    outbox = Outbox(current_user.tenant_id)
    try:
        result = await services.attendance.record(
            db,
            current_user.tenant_id,
            assignment_id,
            payload.status,
            outbox,
            notes=payload.notes,
            recorded_by=current_user.id,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    response = AttendanceResponse(
        assignment=service.assignment_to_response(result.assignment),
        incidents_resolved=result.incidents_resolved,
        follow_up_assignment_id=result.follow_up_assignment_id,
        follow_up_session_id=result.follow_up_session_id,
        queue_entry_id=result.queue_entry_id,
    )
    await services.dispatcher.dispatch(db, outbox)
    return response


# ----- Students -----
@router.post("/students/{student_id}/evaluate", response_model=PlacementResponse)
async def evaluate_student(
    student_id: UUID,
    payload: Optional[EvaluateStudentRequest] = None,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> PlacementResponse:
    """Called after an incident is recorded: apply detention rules and place or queue the student."""
    outbox = Outbox(current_user.tenant_id)
    try:
        result = await services.engine.assign_for_incident(
            db,
            current_user.tenant_id,
            student_id,
            outbox,
            incident_id=payload.incident_id if payload else None,
            assigned_by=current_user.id,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    response = service.placement_to_response(result)
    await services.dispatcher.dispatch(db, outbox)
    return response


@router.get("/students/{student_id}/assignments", response_model=List[StudentDetentionHistoryItem])
async def student_history(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[StudentDetentionHistoryItem]:
    try:
        return await service.student_history(db, current_user.tenant_id, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/qualifying-students", response_model=List[QualifyingStudentResponse])
async def qualifying_students(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    services: DetentionServices = Depends(get_detention_services),
) -> List[QualifyingStudentResponse]:
    """Students whose outstanding demerit points reach the school-wide threshold."""
    return await service.qualifying_students(db, current_user.tenant_id, services)


# ----- Queue -----
@router.get("/queue", response_model=List[QueueEntryResponse])
async def list_queue(
    queue_status: Optional[QueueStatus] = Query(QueueStatus.PENDING, alias="status"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
) -> List[QueueEntryResponse]:
    return await service.list_queue(db, current_user.tenant_id, queue_status.value if queue_status else None)


# ----- Live updates -----
@router.websocket("/live")
async def live_updates(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
    services: DetentionServices = Depends(get_detention_services),
):
    """Stream detention status changes for the caller's school."""
    current_user = await resolve_active_user(db, token)
    if current_user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    tenant_id = current_user.tenant_id
    broadcaster = services.dispatcher.events

    await websocket.accept()
    queue = broadcaster.subscribe(tenant_id)
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error("Live detention stream closed: %s", e)
    finally:
        broadcaster.unsubscribe(tenant_id, queue)
