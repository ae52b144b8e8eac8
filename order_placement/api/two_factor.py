import asyncio
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from order_placement.db.session import get_db
from order_placement.schemas.two_factor import (
    CancelAction,
    CancelledMessage,
    ChallengeOut,
    ClientAction,
    CodeResultMessage,
    CodeSubmission,
    ErrorMessage,
)
from order_placement.core.security import get_current_user, user_from_token
from order_placement.core.audit_decorator import audit_log
from order_placement.core.rate_limit import check_rate_limit
from order_placement.core.response_builders import build_challenge_response
from order_placement.core.enums import AuditAction
from order_placement.core.exceptions import ChallengeNotFoundError
from order_placement.services.message_bus import MessageBus, get_message_bus
from order_placement.services.tasks import CeleryDispatcher, get_dispatcher
from order_placement.services.two_factor import TwoFactorChallengeManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/two-factor", tags=["two-factor"])

client_actions = TypeAdapter(ClientAction)


def get_challenge_manager(
    db: AsyncSession = Depends(get_db),
    bus: MessageBus = Depends(get_message_bus),
    dispatcher: CeleryDispatcher = Depends(get_dispatcher),
) -> TwoFactorChallengeManager:
    return TwoFactorChallengeManager(db, bus, dispatcher)


@router.get("/pending", response_model=List[ChallengeOut])
async def pending_challenges(
    current_user=Depends(get_current_user),
    manager: TwoFactorChallengeManager = Depends(get_challenge_manager),
):
    challenges = await manager.pending_for_user(int(current_user.id))
    return [build_challenge_response(c) for c in challenges]


@router.post("/{session_token}/code", response_model=CodeResultMessage)
@audit_log(AuditAction.SUBMIT_2FA_CODE)
async def submit_code(
    session_token: str,
    payload: CodeSubmission,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
    manager: TwoFactorChallengeManager = Depends(get_challenge_manager),
):
    await check_rate_limit(int(current_user.id))
    try:
        return await manager.submit_code(session_token, payload.code, int(current_user.id))
    except ChallengeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{session_token}/cancel", response_model=CancelledMessage)
@audit_log(AuditAction.CANCEL_2FA)
async def cancel_challenge(
    session_token: str,
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
    manager: TwoFactorChallengeManager = Depends(get_challenge_manager),
):
    try:
        await manager.cancel(session_token, int(current_user.id))
    except ChallengeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return CancelledMessage(session_token=session_token)


@router.websocket("/ws")
async def two_factor_channel(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
    bus: MessageBus = Depends(get_message_bus),
    manager: TwoFactorChallengeManager = Depends(get_challenge_manager),
):
    """Live channel: pushes challenges and status updates, accepts codes."""
    try:
        user = await user_from_token(token, db)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    user_id = int(user.id)
    logger.info(f"[TwoFactor] Channel opened for user {user_id}")

    async def forward():
        async for message in bus.subscribe(user_id):
            await websocket.send_json(message)

    forwarder = asyncio.create_task(forward())
    try:
        while True:
            data = await websocket.receive_json()
            try:
                action = client_actions.validate_python(data)
            except ValidationError:
                await websocket.send_json(ErrorMessage(message="Unknown action").model_dump(mode="json"))
                continue

            # Results reach the socket through the bus
            try:
                if isinstance(action, CancelAction):
                    await manager.cancel(action.session_token, user_id)
                else:
                    await manager.submit_code(action.session_token, action.code, user_id)
            except ChallengeNotFoundError as e:
                await websocket.send_json(ErrorMessage(message=str(e)).model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.info(f"[TwoFactor] Channel closed for user {user_id}")
    finally:
        forwarder.cancel()
        await asyncio.gather(forwarder, return_exceptions=True)
