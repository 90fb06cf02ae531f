"""
Doubt Ledger - lifecycle of student questions in a live session

    submit()         new question → merged into a similar doubt, or created
    mark_answered()  instructor answers a doubt
    toggle_upvote()  student (un)upvotes a doubt
    list_doubts()    canonical doubts, most merged first

Counters (merged_count, upvotes, session stats) are only ever changed with
``UPDATE ... SET col = col + n`` so concurrent requests interleaving on the
event loop cannot lose an increment.  Every operation commits first and
broadcasts afterwards; a failed write raises PersistenceFailure and nothing
is emitted to the room.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from questionflow.core.errors import NotFound, PersistenceFailure
from questionflow.db.models import (
    ClassSession, Doubt, DoubtSubmission, DoubtUpvote, new_id, utcnow
)
from questionflow.services.broadcaster import RoomBroadcaster
from questionflow.services.similarity import SimilarityMatcher, extract_topic

logger = logging.getLogger("questionflow.doubts")


class DoubtLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        broadcaster: RoomBroadcaster,
        matcher: Optional[SimilarityMatcher] = None,
        anonymous_name: str = "Anonymous",
    ):
        self._db = session_factory
        self.broadcaster = broadcaster
        self.matcher = matcher or SimilarityMatcher()
        self.anonymous_name = anonymous_name

    async def _load(self, doubt_id: str) -> Doubt:
        async with self._db() as db:
            doubt = await db.get(Doubt, doubt_id)
            if doubt is None:
                raise NotFound(f"Doubt not found: {doubt_id}")
            return doubt

    async def get_doubt(self, doubt_id: str) -> Dict[str, Any]:
        return (await self._load(doubt_id)).to_dict()

    # ── Submission / merge ──────────────────────────────────

    async def submit(
        self,
        session_id: str,
        question: str,
        student_id: str,
        student_name: str,
        is_anonymous: bool = False,
        confusion_level: Optional[int] = None,
        auto_merge: bool = True,
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Record a question for ``session_id``.

        Returns (canonical doubt, merged).  When auto-merge finds a similar
        canonical doubt the submission is folded into it and no new doubt row
        is written; otherwise a new canonical doubt is created and the
        session's totalDoubts is incremented.
        """
        display_name = self.anonymous_name if is_anonymous else student_name
        topic = extract_topic(question)

        try:
            async with self._db() as db:
                matches = []
                if auto_merge:
                    matches = await self.matcher.find_similar(db, session_id, question)

                if matches:
                    doubt_id = matches[0].id
                    db.add(DoubtSubmission(
                        doubt_id=doubt_id,
                        student_id=student_id,
                        student_name=display_name,
                        timestamp=utcnow(),
                    ))
                    await db.execute(
                        update(Doubt)
                        .where(Doubt.id == doubt_id)
                        .values(merged_count=Doubt.merged_count + 1)
                    )
                    merged = True
                else:
                    doubt_id = new_id()
                    now = utcnow()
                    db.add(Doubt(
                        id=doubt_id,
                        session_id=session_id,
                        question=question,
                        student_id=student_id,
                        student_name=display_name,
                        is_anonymous=is_anonymous,
                        topic=topic,
                        confusion_level=confusion_level or 1,
                        merged_count=1,
                        created_at=now,
                    ))
                    db.add(DoubtSubmission(
                        doubt_id=doubt_id,
                        student_id=student_id,
                        student_name=display_name,
                        timestamp=now,
                    ))
                    await db.execute(
                        update(ClassSession)
                        .where(ClassSession.id == session_id)
                        .values(total_doubts=ClassSession.total_doubts + 1)
                    )
                    merged = False
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Could not save doubt: {e}") from e

        doubt = (await self._load(doubt_id)).to_dict()
        if merged:
            self.broadcaster.broadcast(session_id, "doubt-merged", {
                "doubt": doubt,
                "mergedCount": doubt["mergedCount"],
            })
        else:
            self.broadcaster.broadcast(session_id, "new-doubt", doubt)
        return doubt, merged

    # ── Answer ──────────────────────────────────────────────

    async def mark_answered(self, doubt_id: str, answer: Optional[str] = None) -> Dict[str, Any]:
        values = {"is_answered": True, "answered_at": utcnow()}
        if answer:
            values["answer"] = answer

        try:
            async with self._db() as db:
                doubt = await db.get(Doubt, doubt_id)
                if doubt is None:
                    raise NotFound(f"Doubt not found: {doubt_id}")
                session_id = doubt.session_id

                # Only the first transition to answered counts towards the stats
                first = await db.execute(
                    update(Doubt)
                    .where(Doubt.id == doubt_id, Doubt.is_answered.is_(False))
                    .values(**values)
                )
                if first.rowcount:
                    await db.execute(
                        update(ClassSession)
                        .where(ClassSession.id == session_id)
                        .values(answered_doubts=ClassSession.answered_doubts + 1)
                    )
                else:
                    await db.execute(update(Doubt).where(Doubt.id == doubt_id).values(**values))
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Could not answer doubt {doubt_id}: {e}") from e

        result = (await self._load(doubt_id)).to_dict()
        self.broadcaster.broadcast(session_id, "doubt-answered", result)
        return result

    # ── Upvote ──────────────────────────────────────────────

    async def toggle_upvote(self, doubt_id: str, student_id: str) -> Dict[str, Any]:
        try:
            async with self._db() as db:
                doubt = await db.get(Doubt, doubt_id)
                if doubt is None:
                    raise NotFound(f"Doubt not found: {doubt_id}")
                session_id = doubt.session_id

                removed = await db.execute(
                    delete(DoubtUpvote).where(
                        DoubtUpvote.doubt_id == doubt_id,
                        DoubtUpvote.student_id == student_id,
                    )
                )
                if removed.rowcount:
                    delta = -1
                else:
                    db.add(DoubtUpvote(doubt_id=doubt_id, student_id=student_id))
                    delta = 1
                await db.execute(
                    update(Doubt)
                    .where(Doubt.id == doubt_id)
                    .values(upvotes=Doubt.upvotes + delta)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Could not upvote doubt {doubt_id}: {e}") from e

        result = (await self._load(doubt_id)).to_dict()
        self.broadcaster.broadcast(session_id, "doubt-upvoted", result)
        return result

    # ── Listing ─────────────────────────────────────────────

    async def list_doubts(
        self,
        session_id: str,
        answered: Optional[bool] = None,
        topic: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = select(Doubt).where(
            Doubt.session_id == session_id, Doubt.merged_with.is_(None)
        )
        if answered is not None:
            query = query.where(Doubt.is_answered.is_(answered))
        if topic:
            query = query.where(Doubt.topic == topic)
        query = query.order_by(Doubt.merged_count.desc(), Doubt.created_at.desc())

        async with self._db() as db:
            result = await db.execute(query)
            return [d.to_dict() for d in result.scalars().all()]
