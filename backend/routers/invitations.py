# routers/invitations.py — Invite collaborators by email and respond to invitations
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from board_service import BoardService
from database import get_db_session
from schemas import AcceptOut, InvitationOut, InviteCreate, MessageOut

router = APIRouter(prefix="/api/boards", tags=["Invitations"])


@router.post("/{board_id}/invite", response_model=MessageOut, status_code=201)
async def invite_user(
    board_id: str,
    data: InviteCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Invite someone to collaborate on a board (owner only)"""
    await BoardService.invite(db, board_id, user, data)
    return MessageOut(message="Invitation sent successfully")


@router.get("/invitation/{token}/details", response_model=InvitationOut)
async def invitation_details(
    token: str,
    db: AsyncSession = Depends(get_db_session),
):
    """Public lookup so the accept page can show what the invitation is for"""
    return await BoardService.invitation_details(db, token)


@router.post("/invitation/{token}/accept", response_model=AcceptOut)
async def accept_invitation(
    token: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    board_id = await BoardService.accept_invitation(db, token, user)
    return AcceptOut(message="Invitation accepted successfully", board_id=board_id)


@router.post("/invitation/{token}/reject", response_model=MessageOut)
async def reject_invitation(
    token: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await BoardService.reject_invitation(db, token, user)
    return MessageOut(message="Invitation rejected")
