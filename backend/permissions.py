# permissions.py — Board access control (owner + collaborators)
from typing import Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ForbiddenError
from models import Board, BoardCollaborator


def has_access(board: Board, collaborator_ids: Iterable[str], user_id: str) -> bool:
    if board.owner_id == user_id:
        return True
    return user_id in set(collaborator_ids)


async def collaborator_ids(db: AsyncSession, board_id: str) -> List[str]:
    stmt = (
        select(BoardCollaborator.user_id)
        .where(BoardCollaborator.board_id == board_id)
        .order_by(BoardCollaborator.joined_at.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def require_access(db: AsyncSession, board: Board, user_id: str) -> None:
    """Raise ForbiddenError unless the user owns or collaborates on the board."""
    if board.owner_id == user_id:
        return
    if not has_access(board, await collaborator_ids(db, board.id), user_id):
        raise ForbiddenError("Access denied")


def require_owner(board: Board, user_id: str, message: str = "Only the board owner can do this") -> None:
    if board.owner_id != user_id:
        raise ForbiddenError(message)
