# board_service.py — Board, list, card, comment and invitation operations
# Shared by the REST routers and the realtime dispatcher so that both paths
# run the same validation, access checks, persistence and audit trail.

import uuid
import secrets
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ForbiddenError, InvalidIdError, NotFoundError, ValidationError
from mailer import EmailDeliveryError, send_invitation_email
from models import (
    User, Board, BoardCollaborator, BoardList, Card, Comment, Invitation, AuditLog,
    AuditAction, CollaboratorRole, InvitationStatus, utcnow, as_utc,
)
from ordering import place, renumber
from permissions import collaborator_ids, has_access, require_access, require_owner
from schemas import (
    AuditLogOut, BoardCreate, BoardOut, BoardUpdate, CardCreate, CardOut, CardUpdate,
    CollaboratorOut, CommentOut, InvitationOut, InviteCreate, LabelOut, ListCreate,
    ListOut, ListUpdate, UserPublic,
)

logger = logging.getLogger("kanbanflow.boards")

MAX_DETAILS_LENGTH = 500


# ============================================================
# HELPERS
# ============================================================

def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).isoformat()


def check_id(value: str) -> str:
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise InvalidIdError("Invalid ID format")
    return str(value)


def user_out(user: Optional[User]) -> Optional[UserPublic]:
    if user is None:
        return None
    return UserPublic(
        id=user.id,
        name=user.name,
        email=user.email,
        avatar=user.avatar or "",
        created_at=_ts(user.created_at),
    )


async def _users_by_id(db: AsyncSession, ids: Iterable[Optional[str]]) -> Dict[str, User]:
    wanted = {i for i in ids if i}
    if not wanted:
        return {}
    result = await db.execute(select(User).where(User.id.in_(list(wanted))))
    return {u.id: u for u in result.scalars().all()}


async def _sorted_lists(db: AsyncSession, board_id: str) -> List[BoardList]:
    stmt = (
        select(BoardList)
        .where(BoardList.board_id == board_id)
        .order_by(BoardList.position.asc(), BoardList.created_at.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _sorted_cards(db: AsyncSession, list_id: str) -> List[Card]:
    stmt = (
        select(Card)
        .where(Card.list_id == list_id)
        .order_by(Card.position.asc(), Card.created_at.asc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _splice(rows: list, item_id: str, index: Optional[int]) -> int:
    """Move ``item_id`` to ``index`` among ``rows`` and renumber; returns its final index."""
    order = place([r.id for r in rows], item_id, len(rows) if index is None else index)
    renumber(rows, order)
    return order.index(item_id)


def _close_gaps(rows: list) -> None:
    renumber(rows, [r.id for r in rows])


# ============================================================
# SERVICE
# ============================================================

class BoardService:
    """All board mutations. Every method commits exactly once."""

    # ---------------- lookups ----------------

    @staticmethod
    async def get_board(db: AsyncSession, board_id: str) -> Board:
        result = await db.execute(select(Board).where(Board.id == check_id(board_id)))
        board = result.scalar_one_or_none()
        if not board:
            raise NotFoundError("Board not found")
        return board

    @staticmethod
    async def get_accessible_board(db: AsyncSession, board_id: str, user_id: str) -> Board:
        board = await BoardService.get_board(db, board_id)
        await require_access(db, board, user_id)
        return board

    @staticmethod
    async def get_list(db: AsyncSession, list_id: str) -> BoardList:
        result = await db.execute(select(BoardList).where(BoardList.id == check_id(list_id)))
        lst = result.scalar_one_or_none()
        if not lst:
            raise NotFoundError("List not found")
        return lst

    @staticmethod
    async def get_card(db: AsyncSession, card_id: str) -> Card:
        result = await db.execute(select(Card).where(Card.id == check_id(card_id)))
        card = result.scalar_one_or_none()
        if not card:
            raise NotFoundError("Card not found")
        return card

    # ---------------- serialisation ----------------

    @staticmethod
    async def comments_out(db: AsyncSession, card_ids: List[str]) -> Dict[str, List[CommentOut]]:
        grouped: Dict[str, List[CommentOut]] = {cid: [] for cid in card_ids}
        if not card_ids:
            return grouped
        stmt = (
            select(Comment)
            .where(Comment.card_id.in_(card_ids))
            .order_by(Comment.created_at.asc())
        )
        comments = (await db.execute(stmt)).scalars().all()
        authors = await _users_by_id(db, (c.author_id for c in comments))
        for c in comments:
            grouped[c.card_id].append(CommentOut(
                id=c.id,
                content=c.content,
                card_id=c.card_id,
                author=user_out(authors.get(c.author_id)),
                created_at=_ts(c.created_at),
            ))
        return grouped

    @staticmethod
    async def cards_out(db: AsyncSession, cards: List[Card], include_comments: bool = True) -> List[CardOut]:
        users = await _users_by_id(
            db, [c.assignee_id for c in cards] + [c.created_by_id for c in cards]
        )
        comments = (
            await BoardService.comments_out(db, [c.id for c in cards])
            if include_comments else {}
        )
        return [
            CardOut(
                id=c.id,
                title=c.title,
                description=c.description,
                list_id=c.list_id,
                board_id=c.board_id,
                position=c.position,
                labels=[LabelOut(**label) for label in (c.labels or [])],
                assignee=user_out(users.get(c.assignee_id)),
                due_date=_ts(c.due_date),
                created_by=user_out(users.get(c.created_by_id)),
                comments=comments.get(c.id, []),
                created_at=_ts(c.created_at),
                updated_at=_ts(c.updated_at),
            )
            for c in cards
        ]

    @staticmethod
    async def card_out(db: AsyncSession, card: Card) -> CardOut:
        return (await BoardService.cards_out(db, [card]))[0]

    @staticmethod
    def list_out(lst: BoardList, cards: Optional[List[CardOut]] = None) -> ListOut:
        return ListOut(
            id=lst.id,
            title=lst.title,
            board_id=lst.board_id,
            position=lst.position,
            cards=cards or [],
            created_at=_ts(lst.created_at),
            updated_at=_ts(lst.updated_at),
        )

    @staticmethod
    async def board_out(db: AsyncSession, board: Board, include_comments: bool = True) -> BoardOut:
        """Populate the full board tree: owner, collaborators, lists, cards (and comments)."""
        collab_rows = (await db.execute(
            select(BoardCollaborator)
            .where(BoardCollaborator.board_id == board.id)
            .order_by(BoardCollaborator.joined_at.asc())
        )).scalars().all()
        users = await _users_by_id(db, [board.owner_id] + [c.user_id for c in collab_rows])

        lists = await _sorted_lists(db, board.id)
        cards = (await db.execute(
            select(Card)
            .where(Card.board_id == board.id)
            .order_by(Card.position.asc(), Card.created_at.asc())
        )).scalars().all()
        cards_by_list: Dict[str, List[CardOut]] = {lst.id: [] for lst in lists}
        for card in await BoardService.cards_out(db, list(cards), include_comments):
            cards_by_list.setdefault(card.list_id, []).append(card)

        return BoardOut(
            id=board.id,
            title=board.title,
            description=board.description,
            color=board.color,
            owner=user_out(users.get(board.owner_id)),
            collaborators=[
                CollaboratorOut(
                    user=user_out(users[c.user_id]),
                    role=c.role.value if isinstance(c.role, CollaboratorRole) else c.role,
                    joined_at=_ts(c.joined_at),
                )
                for c in collab_rows if c.user_id in users
            ],
            lists=[BoardService.list_out(lst, cards_by_list.get(lst.id)) for lst in lists],
            created_at=_ts(board.created_at),
            updated_at=_ts(board.updated_at),
        )

    # ---------------- audit ----------------

    @staticmethod
    def record_audit(db: AsyncSession, action: AuditAction, user_id: str, board_id: str, details: str = None):
        """Stage an activity row; it commits with the mutation it describes."""
        db.add(AuditLog(
            action=action,
            user_id=user_id,
            board_id=board_id,
            details=(details or "")[:MAX_DETAILS_LENGTH] or None,
        ))

    @staticmethod
    async def list_activity(db: AsyncSession, board_id: str, user_id: str, limit: int = 50) -> List[AuditLogOut]:
        await BoardService.get_accessible_board(db, board_id, user_id)
        stmt = (
            select(AuditLog)
            .where(AuditLog.board_id == board_id)
            .order_by(AuditLog.timestamp.desc())
            .limit(limit)
        )
        rows = (await db.execute(stmt)).scalars().all()
        users = await _users_by_id(db, (r.user_id for r in rows))
        return [
            AuditLogOut(
                id=r.id,
                action=r.action.value if isinstance(r.action, AuditAction) else r.action,
                board_id=r.board_id,
                user=user_out(users.get(r.user_id)),
                details=r.details,
                timestamp=_ts(r.timestamp),
            )
            for r in rows
        ]

    # ---------------- boards ----------------

    @staticmethod
    async def list_boards(db: AsyncSession, user_id: str) -> List[BoardOut]:
        shared = select(BoardCollaborator.board_id).where(BoardCollaborator.user_id == user_id)
        stmt = (
            select(Board)
            .where(or_(Board.owner_id == user_id, Board.id.in_(shared)))
            .order_by(Board.updated_at.desc())
        )
        boards = (await db.execute(stmt)).scalars().all()
        return [await BoardService.board_out(db, b, include_comments=False) for b in boards]

    @staticmethod
    async def create_board(db: AsyncSession, user_id: str, data: BoardCreate) -> BoardOut:
        board = Board(
            title=data.title,
            description=data.description,
            color=data.color,
            owner_id=user_id,
        )
        db.add(board)
        await db.flush()
        BoardService.record_audit(db, AuditAction.BOARD_CREATED, user_id, board.id, f'Created board "{board.title}"')
        await db.commit()
        return await BoardService.board_out(db, board)

    @staticmethod
    async def update_board(db: AsyncSession, board_id: str, user_id: str, data: BoardUpdate) -> BoardOut:
        board = await BoardService.get_board(db, board_id)
        require_owner(board, user_id, "Only board owners can update board settings")

        changed = []
        for field in ("title", "description", "color"):
            if field in data.model_fields_set:
                value = getattr(data, field)
                if value is None and field != "description":
                    continue
                setattr(board, field, value)
                changed.append(field)
        board.updated_at = utcnow()
        BoardService.record_audit(
            db, AuditAction.BOARD_UPDATED, user_id, board.id,
            f"Updated board {', '.join(changed) or 'settings'}",
        )
        await db.commit()
        return await BoardService.board_out(db, board)

    @staticmethod
    async def delete_board(db: AsyncSession, board_id: str, user_id: str) -> None:
        """Delete a board and everything under it in one transaction."""
        board = await BoardService.get_board(db, board_id)
        require_owner(board, user_id, "Only board owners can delete boards")

        card_ids = select(Card.id).where(Card.board_id == board.id)
        try:
            await db.execute(delete(Comment).where(Comment.card_id.in_(card_ids)))
            await db.execute(delete(Card).where(Card.board_id == board.id))
            await db.execute(delete(BoardList).where(BoardList.board_id == board.id))
            await db.execute(delete(Invitation).where(Invitation.board_id == board.id))
            await db.execute(delete(BoardCollaborator).where(BoardCollaborator.board_id == board.id))
            await db.execute(delete(AuditLog).where(AuditLog.board_id == board.id))
            await db.delete(board)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        logger.info(f"Board {board_id[:8]} deleted by {user_id[:8]}")

    # ---------------- lists ----------------

    @staticmethod
    async def create_list(db: AsyncSession, board_id: str, user_id: str, data: ListCreate) -> ListOut:
        board = await BoardService.get_accessible_board(db, board_id, user_id)
        lst = BoardList(title=data.title, board_id=board.id, position=data.position or 0)
        db.add(lst)
        await db.flush()
        await _splice(await _sorted_lists(db, board.id), lst.id, data.position)
        BoardService.record_audit(db, AuditAction.LIST_CREATED, user_id, board.id, f'Created list "{lst.title}"')
        await db.commit()
        return BoardService.list_out(lst)

    @staticmethod
    async def update_list(db: AsyncSession, list_id: str, user_id: str, data: ListUpdate) -> ListOut:
        lst = await BoardService.get_list(db, list_id)
        board = await BoardService.get_accessible_board(db, lst.board_id, user_id)

        if data.title is not None:
            lst.title = data.title
        if data.position is not None:
            await _splice(await _sorted_lists(db, board.id), lst.id, data.position)
        lst.updated_at = utcnow()
        BoardService.record_audit(db, AuditAction.LIST_UPDATED, user_id, board.id, f'Updated list "{lst.title}"')
        await db.commit()
        cards = await BoardService.cards_out(db, await _sorted_cards(db, lst.id))
        return BoardService.list_out(lst, cards)

    @staticmethod
    async def delete_list(db: AsyncSession, list_id: str, user_id: str) -> BoardList:
        lst = await BoardService.get_list(db, list_id)
        board = await BoardService.get_accessible_board(db, lst.board_id, user_id)

        card_ids = select(Card.id).where(Card.list_id == lst.id)
        await db.execute(delete(Comment).where(Comment.card_id.in_(card_ids)))
        await db.execute(delete(Card).where(Card.list_id == lst.id))
        await db.delete(lst)
        await db.flush()
        _close_gaps(await _sorted_lists(db, board.id))
        BoardService.record_audit(db, AuditAction.LIST_DELETED, user_id, board.id, f'Deleted list "{lst.title}"')
        await db.commit()
        return lst

    # ---------------- cards ----------------

    @staticmethod
    async def _check_assignee(db: AsyncSession, board: Board, assignee_id: Optional[str]) -> None:
        if not assignee_id:
            return
        check_id(assignee_id)
        if not has_access(board, await collaborator_ids(db, board.id), assignee_id):
            raise ValidationError("Assignee must be a member of this board")

    @staticmethod
    async def create_card(db: AsyncSession, board_id: str, user_id: str, data: CardCreate) -> CardOut:
        board = await BoardService.get_accessible_board(db, board_id, user_id)
        lst = await BoardService.get_list(db, data.list_id)
        if lst.board_id != board.id:
            raise NotFoundError("List not found")
        await BoardService._check_assignee(db, board, data.assignee)

        card = Card(
            title=data.title,
            description=data.description,
            list_id=lst.id,
            board_id=board.id,
            position=data.position or 0,
            labels=[label.model_dump() for label in data.labels],
            assignee_id=data.assignee,
            due_date=data.due_date,
            created_by_id=user_id,
        )
        db.add(card)
        await db.flush()
        await _splice(await _sorted_cards(db, lst.id), card.id, data.position)
        BoardService.record_audit(
            db, AuditAction.CARD_CREATED, user_id, board.id,
            f'Created card "{card.title}" in list "{lst.title}"',
        )
        await db.commit()
        return await BoardService.card_out(db, card)

    @staticmethod
    async def update_card(db: AsyncSession, card_id: str, user_id: str, data: CardUpdate) -> CardOut:
        card = await BoardService.get_card(db, card_id)
        board = await BoardService.get_accessible_board(db, card.board_id, user_id)
        fields = data.model_fields_set

        if "title" in fields and data.title is not None:
            card.title = data.title
        if "description" in fields:
            card.description = data.description
        if "labels" in fields:
            card.labels = [label.model_dump() for label in (data.labels or [])]
        if "assignee" in fields:
            await BoardService._check_assignee(db, board, data.assignee)
            card.assignee_id = data.assignee
        if "due_date" in fields:
            card.due_date = data.due_date
        card.updated_at = utcnow()

        BoardService.record_audit(db, AuditAction.CARD_UPDATED, user_id, board.id, f'Updated card "{card.title}"')
        await db.commit()
        return await BoardService.card_out(db, card)

    @staticmethod
    async def move_card(
        db: AsyncSession, card_id: str, user_id: str, to_list_id: str, position: int,
    ) -> Tuple[CardOut, str]:
        """Move a card and renumber both lists. Returns (card, list it came from)."""
        card = await BoardService.get_card(db, card_id)
        board = await BoardService.get_accessible_board(db, card.board_id, user_id)
        target = await BoardService.get_list(db, to_list_id)
        if target.board_id != board.id:
            raise ValidationError("Cannot move a card to a list on another board")

        from_list_id = card.list_id
        if from_list_id != target.id:
            card.list_id = target.id
            await db.flush()
            _close_gaps(await _sorted_cards(db, from_list_id))
        await _splice(await _sorted_cards(db, target.id), card.id, position)
        card.updated_at = utcnow()

        BoardService.record_audit(
            db, AuditAction.CARD_MOVED, user_id, board.id,
            f'Moved card "{card.title}" to list "{target.title}"',
        )
        await db.commit()
        return await BoardService.card_out(db, card), from_list_id

    @staticmethod
    async def delete_card(db: AsyncSession, card_id: str, user_id: str) -> Card:
        card = await BoardService.get_card(db, card_id)
        board = await BoardService.get_accessible_board(db, card.board_id, user_id)

        await db.execute(delete(Comment).where(Comment.card_id == card.id))
        await db.delete(card)
        await db.flush()
        _close_gaps(await _sorted_cards(db, card.list_id))
        BoardService.record_audit(db, AuditAction.CARD_DELETED, user_id, board.id, f'Deleted card "{card.title}"')
        await db.commit()
        return card

    # ---------------- comments ----------------

    @staticmethod
    async def add_comment(db: AsyncSession, card_id: str, user_id: str, content: str) -> Tuple[CommentOut, Card]:
        card = await BoardService.get_card(db, card_id)
        board = await BoardService.get_accessible_board(db, card.board_id, user_id)

        comment = Comment(content=content, card_id=card.id, author_id=user_id)
        db.add(comment)
        await db.flush()
        BoardService.record_audit(
            db, AuditAction.COMMENT_ADDED, user_id, board.id,
            f'Commented on card "{card.title}"',
        )
        await db.commit()
        author = (await _users_by_id(db, [user_id])).get(user_id)
        return CommentOut(
            id=comment.id,
            content=comment.content,
            card_id=card.id,
            author=user_out(author),
            created_at=_ts(comment.created_at),
        ), card

    # ---------------- invitations ----------------

    @staticmethod
    async def _get_invitation(db: AsyncSession, token: str) -> Invitation:
        result = await db.execute(select(Invitation).where(Invitation.token == token))
        invitation = result.scalar_one_or_none()
        if not invitation:
            raise NotFoundError("Invitation not found")
        return invitation

    @staticmethod
    async def invite(db: AsyncSession, board_id: str, inviter, data: InviteCreate) -> Invitation:
        board = await BoardService.get_board(db, board_id)
        require_owner(board, inviter.id, "Only board owners can invite users")

        existing_user = (await db.execute(select(User).where(User.email == data.email))).scalar_one_or_none()
        if existing_user and has_access(board, await collaborator_ids(db, board.id), existing_user.id):
            raise ValidationError("User is already a collaborator")

        pending = (await db.execute(
            select(Invitation).where(
                Invitation.board_id == board.id,
                Invitation.email == data.email,
                Invitation.status == InvitationStatus.PENDING,
            )
        )).scalars().first()
        if pending and as_utc(pending.expires_at) > utcnow():
            raise ValidationError("Invitation already sent")
        if pending:
            pending.status = InvitationStatus.EXPIRED

        invitation = Invitation(
            board_id=board.id,
            email=data.email,
            role=CollaboratorRole(data.role),
            token=secrets.token_hex(16),
            invited_by_id=inviter.id,
        )
        db.add(invitation)
        BoardService.record_audit(db, AuditAction.USER_INVITED, inviter.id, board.id, f"Invited {data.email}")
        await db.commit()

        try:
            await send_invitation_email(data.email, board.title, inviter.name, invitation.token)
        except EmailDeliveryError as e:
            logger.error(f"Failed to send invitation email to {data.email}: {e}")
        return invitation

    @staticmethod
    async def invitation_details(db: AsyncSession, token: str) -> InvitationOut:
        invitation = await BoardService._get_invitation(db, token)
        if invitation.status == InvitationStatus.PENDING and as_utc(invitation.expires_at) <= utcnow():
            invitation.status = InvitationStatus.EXPIRED
            await db.commit()

        board = (await db.execute(select(Board).where(Board.id == invitation.board_id))).scalar_one_or_none()
        inviter = (await _users_by_id(db, [invitation.invited_by_id])).get(invitation.invited_by_id)
        return InvitationOut(
            id=invitation.id,
            board_id=invitation.board_id,
            board_title=board.title if board else None,
            board_color=board.color if board else None,
            email=invitation.email,
            role=invitation.role.value if isinstance(invitation.role, CollaboratorRole) else invitation.role,
            status=invitation.status.value if isinstance(invitation.status, InvitationStatus) else invitation.status,
            invited_by=user_out(inviter),
            expires_at=_ts(invitation.expires_at),
            created_at=_ts(invitation.created_at),
        )

    @staticmethod
    async def accept_invitation(db: AsyncSession, token: str, user) -> str:
        """Join the invited board. Returns the board id."""
        invitation = await BoardService._get_invitation(db, token)
        if invitation.email != user.email.lower():
            raise ForbiddenError("This invitation was sent to a different email address")

        board = await BoardService.get_board(db, invitation.board_id)
        if has_access(board, await collaborator_ids(db, board.id), user.id):
            raise ValidationError("User is already a collaborator")
        if invitation.status != InvitationStatus.PENDING:
            raise ValidationError("Invitation is no longer valid")
        if as_utc(invitation.expires_at) <= utcnow():
            invitation.status = InvitationStatus.EXPIRED
            await db.commit()
            raise ValidationError("Invitation has expired")

        db.add(BoardCollaborator(board_id=board.id, user_id=user.id, role=invitation.role))
        invitation.status = InvitationStatus.ACCEPTED
        BoardService.record_audit(
            db, AuditAction.INVITATION_ACCEPTED, user.id, board.id,
            f"{user.name} joined the board",
        )
        await db.commit()
        return board.id

    @staticmethod
    async def reject_invitation(db: AsyncSession, token: str, user) -> None:
        invitation = await BoardService._get_invitation(db, token)
        if invitation.email != user.email.lower():
            raise ForbiddenError("This invitation was sent to a different email address")
        board_id = invitation.board_id
        await db.delete(invitation)
        BoardService.record_audit(
            db, AuditAction.INVITATION_REJECTED, user.id, board_id,
            f"{user.email} declined the invitation",
        )
        await db.commit()

    @staticmethod
    async def expire_invitations(db: AsyncSession) -> int:
        """Mark every overdue pending invitation as expired."""
        stmt = select(Invitation).where(
            Invitation.status == InvitationStatus.PENDING,
            Invitation.expires_at <= utcnow(),
        )
        overdue = (await db.execute(stmt)).scalars().all()
        for invitation in overdue:
            invitation.status = InvitationStatus.EXPIRED
        if overdue:
            await db.commit()
        return len(overdue)
