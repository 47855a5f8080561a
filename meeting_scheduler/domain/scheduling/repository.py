"""Scheduling repository - Database operations for scheduling requests"""

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ...models import (
    SchedulingAction,
    SchedulingAttendee,
    SchedulingAttentionItem,
    SchedulingInboundMessage,
    SchedulingOutboundMessage,
    SchedulingRequest,
)
from ...utils.datetime_utils import utcnow
from . import constants as c


class SchedulingRepository:
    """Repository for scheduling database operations"""

    @staticmethod
    def get_request(db: Session, request_id: str) -> Optional[SchedulingRequest]:
        """Get a request with its attendees"""
        return (
            db.query(SchedulingRequest)
            .options(selectinload(SchedulingRequest.attendees))
            .filter(SchedulingRequest.id == request_id)
            .first()
        )

    @staticmethod
    def reload(db: Session, request: SchedulingRequest) -> SchedulingRequest:
        """Re-read a request so status checks see committed state"""
        db.refresh(request)
        return request

    @staticmethod
    def create_request(db: Session, attendees: Iterable[dict], **request_data) -> SchedulingRequest:
        """Create a request and its attendees in one transaction"""
        request = SchedulingRequest(**request_data)
        for attendee in attendees:
            request.attendees.append(SchedulingAttendee(**attendee))
        db.add(request)
        db.commit()
        db.refresh(request)
        return request

    @staticmethod
    def find_request_for_reply(
        db: Session, conversation_id: Optional[str], from_address: Optional[str]
    ) -> list[SchedulingRequest]:
        """
        Find candidate requests for an inbound reply.
        Thread id wins; otherwise only open requests whose thread is not yet known
        and whose external attendee matches the sender.
        """
        if conversation_id:
            by_thread = (
                db.query(SchedulingRequest)
                .filter(SchedulingRequest.email_thread_id == conversation_id)
                .order_by(SchedulingRequest.created_at.desc())
                .all()
            )
            if by_thread:
                return by_thread

        if not from_address:
            return []

        return (
            db.query(SchedulingRequest)
            .join(SchedulingAttendee)
            .filter(
                SchedulingAttendee.side == c.SIDE_EXTERNAL,
                SchedulingAttendee.email == from_address.strip().lower(),
                SchedulingRequest.status.in_(c.NON_TERMINAL_STATUSES),
                SchedulingRequest.email_thread_id.is_(None),
            )
            .order_by(SchedulingRequest.created_at.desc())
            .all()
        )

    # Status compare-and-set and claim tokens

    @staticmethod
    def compare_and_set_status(
        db: Session, request_id: str, expected_statuses: Iterable[str], new_status: str, **updates
    ) -> bool:
        """
        Conditionally update status (and any other columns) only if the row is
        still in one of the expected statuses. Does not commit.
        """
        values = {"status": new_status, "updated_at": utcnow(), **updates}
        rowcount = (
            db.query(SchedulingRequest)
            .filter(
                SchedulingRequest.id == request_id,
                SchedulingRequest.status.in_(list(expected_statuses)),
            )
            .update(values, synchronize_session=False)
        )
        return rowcount == 1

    @staticmethod
    def update_fields(db: Session, request_id: str, allowed_statuses: Iterable[str], **updates) -> bool:
        """Update non-status columns only while the request is in an allowed status. Does not commit."""
        updates.setdefault("updated_at", utcnow())
        rowcount = (
            db.query(SchedulingRequest)
            .filter(
                SchedulingRequest.id == request_id,
                SchedulingRequest.status.in_(list(allowed_statuses)),
            )
            .update(updates, synchronize_session=False)
        )
        return rowcount == 1

    @staticmethod
    def arm_next_action(
        db: Session,
        request_id: str,
        action_type: Optional[str],
        action_at: Optional[datetime],
        allowed_statuses: Iterable[str] = c.NON_TERMINAL_STATUSES,
    ) -> bool:
        """Set (or clear) the claim token unless the request left the allowed statuses"""
        armed = SchedulingRepository.update_fields(
            db, request_id, allowed_statuses, next_action_type=action_type, next_action_at=action_at
        )
        db.commit()
        return armed

    @staticmethod
    def get_due_requests(db: Session, now: datetime, limit: int) -> list[tuple[str, str, datetime]]:
        """(id, next_action_type, next_action_at) for requests whose claim token is due"""
        rows = (
            db.query(
                SchedulingRequest.id,
                SchedulingRequest.next_action_type,
                SchedulingRequest.next_action_at,
            )
            .filter(
                SchedulingRequest.next_action_type.isnot(None),
                SchedulingRequest.next_action_at.isnot(None),
                SchedulingRequest.next_action_at <= now,
            )
            .order_by(SchedulingRequest.next_action_at.asc())
            .limit(limit)
            .all()
        )
        return [(row[0], row[1], row[2]) for row in rows]

    @staticmethod
    def claim_next_action(db: Session, request_id: str, action_type: str, action_at: datetime) -> bool:
        """
        Atomically clear the claim token if it still holds the observed values.
        Returns False when another invocation already claimed (or changed) it.
        """
        rowcount = (
            db.query(SchedulingRequest)
            .filter(
                SchedulingRequest.id == request_id,
                SchedulingRequest.next_action_type == action_type,
                SchedulingRequest.next_action_at == action_at,
            )
            .update(
                {"next_action_type": None, "next_action_at": None},
                synchronize_session=False,
            )
        )
        db.commit()
        return rowcount == 1

    # Audit log

    @staticmethod
    def add_action(db: Session, request_id: str, action_type: str, actor: str, **fields) -> SchedulingAction:
        """Append an audit action. Does not commit."""
        action = SchedulingAction(
            scheduling_request_id=request_id,
            action_type=action_type,
            actor=actor,
            created_at=utcnow(),
            **fields,
        )
        db.add(action)
        return action

    @staticmethod
    def list_actions(db: Session, request_id: str) -> list[SchedulingAction]:
        return (
            db.query(SchedulingAction)
            .filter(SchedulingAction.scheduling_request_id == request_id)
            .order_by(SchedulingAction.created_at.asc(), SchedulingAction.id.asc())
            .all()
        )

    @staticmethod
    def latest_action(db: Session, request_id: str, action_type: str) -> Optional[SchedulingAction]:
        return (
            db.query(SchedulingAction)
            .filter(
                SchedulingAction.scheduling_request_id == request_id,
                SchedulingAction.action_type == action_type,
            )
            .order_by(SchedulingAction.created_at.desc(), SchedulingAction.id.desc())
            .first()
        )

    @staticmethod
    def count_actions(db: Session, request_id: str, action_type: Optional[str] = None) -> int:
        query = db.query(SchedulingAction).filter(SchedulingAction.scheduling_request_id == request_id)
        if action_type:
            query = query.filter(SchedulingAction.action_type == action_type)
        return query.count()

    # Inbound message idempotency

    @staticmethod
    def claim_inbound_message(
        db: Session,
        message_id: str,
        conversation_id: Optional[str],
        from_address: Optional[str],
        received_at: Optional[datetime],
    ) -> bool:
        """Insert the message id; False if it was already processed (or is being processed)"""
        seen = (
            db.query(SchedulingInboundMessage.message_id)
            .filter(SchedulingInboundMessage.message_id == message_id)
            .first()
        )
        if seen:
            return False
        db.add(
            SchedulingInboundMessage(
                message_id=message_id,
                conversation_id=conversation_id,
                from_address=from_address,
                received_at=received_at,
                outcome="processing",
            )
        )
        try:
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False

    @staticmethod
    def finish_inbound_message(db: Session, message_id: str, request_id: Optional[str], outcome: str) -> None:
        db.query(SchedulingInboundMessage).filter(SchedulingInboundMessage.message_id == message_id).update(
            {"scheduling_request_id": request_id, "outcome": outcome, "processed_at": utcnow()},
            synchronize_session=False,
        )
        db.commit()

    @staticmethod
    def release_inbound_message(db: Session, message_id: str) -> None:
        """Forget a message whose processing crashed so a redelivery can retry it"""
        db.rollback()
        db.query(SchedulingInboundMessage).filter(SchedulingInboundMessage.message_id == message_id).delete(
            synchronize_session=False
        )
        db.commit()

    # Outbound messages

    @staticmethod
    def get_outbound(db: Session, request_id: str, attempt: int) -> Optional[SchedulingOutboundMessage]:
        return (
            db.query(SchedulingOutboundMessage)
            .filter(
                SchedulingOutboundMessage.scheduling_request_id == request_id,
                SchedulingOutboundMessage.attempt == attempt,
            )
            .first()
        )

    @staticmethod
    def save_outbound(db: Session, **message_data) -> SchedulingOutboundMessage:
        """Store composed content; if another invocation won the race, return its row"""
        message = SchedulingOutboundMessage(**message_data)
        db.add(message)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return SchedulingRepository.get_outbound(
                db, message_data["scheduling_request_id"], message_data["attempt"]
            )
        db.refresh(message)
        return message

    @staticmethod
    def mark_outbound_sent(
        db: Session, message: SchedulingOutboundMessage, provider_message_id: Optional[str] = None
    ) -> None:
        message.provider_message_id = provider_message_id
        message.sent_at = utcnow()
        db.commit()

    @staticmethod
    def latest_thread_message_id(db: Session, request_id: str) -> Optional[str]:
        """Most recent message in the thread to reply to: last inbound reply, else our last send"""
        inbound = (
            db.query(SchedulingInboundMessage.message_id)
            .filter(SchedulingInboundMessage.scheduling_request_id == request_id)
            .order_by(SchedulingInboundMessage.received_at.desc(), SchedulingInboundMessage.processed_at.desc())
            .first()
        )
        if inbound:
            return inbound[0]
        outbound = (
            db.query(SchedulingOutboundMessage.provider_message_id)
            .filter(
                SchedulingOutboundMessage.scheduling_request_id == request_id,
                SchedulingOutboundMessage.provider_message_id.isnot(None),
            )
            .order_by(SchedulingOutboundMessage.attempt.desc())
            .first()
        )
        return outbound[0] if outbound else None

    @staticmethod
    def open_attention_count(db: Session, request_id: str) -> int:
        return (
            db.query(SchedulingAttentionItem)
            .filter(
                SchedulingAttentionItem.scheduling_request_id == request_id,
                SchedulingAttentionItem.resolved_at.is_(None),
            )
            .count()
        )

    @staticmethod
    def used_social_proof_ids(db: Session, request_id: str) -> set[int]:
        rows = (
            db.query(SchedulingOutboundMessage.social_proof_id)
            .filter(
                SchedulingOutboundMessage.scheduling_request_id == request_id,
                SchedulingOutboundMessage.social_proof_id.isnot(None),
            )
            .all()
        )
        return {row[0] for row in rows}

    # Attention items

    @staticmethod
    def create_attention_item(
        db: Session, request: SchedulingRequest, reason: str, summary: str, details: Optional[dict] = None
    ) -> SchedulingAttentionItem:
        """Open an attention item for the request owner. Does not commit."""
        item = SchedulingAttentionItem(
            scheduling_request_id=request.id,
            owner=request.created_by,
            reason=reason,
            summary=summary,
            details=details,
        )
        db.add(item)
        return item

    @staticmethod
    def list_attention_items(
        db: Session, owner: Optional[str] = None, include_resolved: bool = False
    ) -> list[SchedulingAttentionItem]:
        query = db.query(SchedulingAttentionItem)
        if owner:
            query = query.filter(or_(SchedulingAttentionItem.owner == owner, SchedulingAttentionItem.owner.is_(None)))
        if not include_resolved:
            query = query.filter(SchedulingAttentionItem.resolved_at.is_(None))
        return query.order_by(SchedulingAttentionItem.created_at.desc()).all()

    @staticmethod
    def get_attention_item(db: Session, item_id: int) -> Optional[SchedulingAttentionItem]:
        return db.query(SchedulingAttentionItem).filter(SchedulingAttentionItem.id == item_id).first()
