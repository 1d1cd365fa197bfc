"""Orchestrator routes: producers schedule messages, operators trigger ticks."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from relay_platform.domain.errors import MessageNotFoundError, QueueValidationError
from relay_platform.domain.schemas import ScheduleMessageRequest, SupersedeRequest
from relay_platform.infra.database import get_db
from relay_platform.services.message_queue_service import MessageQueueService, QueueMessageParams
from relay_platform.services.processor_runner import ProcessorRunner

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orchestrator"])


def get_runner(request: Request) -> ProcessorRunner:
    """FastAPI dependency: the process-wide ProcessorRunner."""
    return request.app.state.runner


@router.post("/schedule-message")
async def schedule_message(
    body: ScheduleMessageRequest,
    db: AsyncSession = Depends(get_db),
    runner: ProcessorRunner = Depends(get_runner),
):
    """Queue a message (or one part of a sequence) for delivery."""
    missing = body.missing_fields()
    if missing:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Missing required fields",
                "missing": missing,
                "required": ["userId", "agentId", "messageData"],
            },
        )

    params = QueueMessageParams(
        user_id=body.user_id,
        agent_id=body.agent_id,
        message_data=body.message_data,
        priority=body.priority,
        can_delay=body.can_delay,
        final_message=body.final_message,
        conversation_id=body.conversation_id,
        sequence_id=body.sequence_id,
        sequence_position=body.sequence_position,
        sequence_total=body.sequence_total,
        requires_fresh_context=body.requires_fresh_context,
    )

    try:
        message_id = await MessageQueueService(db).queue_message(params)
    except QueueValidationError as e:
        await db.rollback()
        raise HTTPException(status_code=400, detail=str(e))

    await db.commit()
    runner.metrics.record_queued()

    return {"success": True, "messageId": message_id, "status": "queued"}


@router.post("/process-queue")
async def process_queue(runner: ProcessorRunner = Depends(get_runner)):
    """Run one processing tick now (waits for any tick already running)."""
    logger.info("Manual queue processing triggered")
    summary = await runner.run_once()
    last = runner.metrics.last_process_time

    return {
        "success": summary is not None,
        "lastProcessTime": last.isoformat() if last else None,
        "results": summary.as_dict() if summary else None,
    }


@router.post("/messages/{message_id}/cancel")
async def cancel_message(message_id: str, db: AsyncSession = Depends(get_db)):
    """Cancel a queued message; sequence parts cancel the whole sequence."""
    try:
        affected = await MessageQueueService(db).cancel_message(message_id)
    except MessageNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found")
    await db.commit()
    return {"success": True, "affected": affected}


@router.post("/messages/{message_id}/supersede")
async def supersede_message(
    message_id: str,
    body: SupersedeRequest,
    db: AsyncSession = Depends(get_db),
):
    """Mark a queued message (or its sequence) superseded by newer context."""
    try:
        affected = await MessageQueueService(db).supersede_message(message_id, body.reason)
    except MessageNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found")
    await db.commit()
    return {"success": True, "affected": affected}
