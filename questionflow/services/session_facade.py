"""
Class Session Facade

Thin CRUD over class sessions.  The interesting part is bookkeeping:
every change of a session's active flag is mirrored into the CodeIndex so
short-code resolution never has to scan the table.
"""
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from questionflow.core.errors import InvalidState, NotFound, PersistenceFailure
from questionflow.db.models import ClassSession, utcnow
from questionflow.services.broadcaster import RoomBroadcaster
from questionflow.services.code_resolver import CodeIndex, CodeResolver

logger = logging.getLogger("questionflow.sessions")


class SessionFacade:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        resolver: CodeResolver,
        broadcaster: RoomBroadcaster,
    ):
        self._db = session_factory
        self.resolver = resolver
        self.broadcaster = broadcaster

    @property
    def index(self) -> CodeIndex:
        return self.resolver.index

    async def load_index(self) -> int:
        """Rebuild the code index from the active sessions in the store."""
        async with self._db() as db:
            result = await db.execute(
                select(ClassSession.id).where(ClassSession.is_active.is_(True))
            )
            ids = list(result.scalars().all())
        self.index.rebuild(ids)
        return len(ids)

    async def create_session(
        self,
        title: str,
        instructor_name: Optional[str] = None,
        auto_merge_doubts: bool = True,
        allow_anonymous: bool = True,
    ) -> ClassSession:
        session = ClassSession(
            title=title,
            instructor_name=instructor_name,
            auto_merge_doubts=auto_merge_doubts,
            allow_anonymous=allow_anonymous,
            is_active=True,
        )
        try:
            async with self._db() as db:
                db.add(session)
                await db.commit()
                await db.refresh(session)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Could not create session: {e}") from e

        self.index.add(session.id)
        logger.info(f"Session {session.id} created (code {session.code})")
        return session

    async def _fetch(self, db: AsyncSession, session_id: str) -> ClassSession:
        session = await db.get(ClassSession, session_id, populate_existing=True)
        if session is None:
            raise NotFound(f"Session not found: {session_id}")
        return session

    async def get_session(self, raw_id: str) -> ClassSession:
        session_id = self.resolver.resolve(raw_id)
        async with self._db() as db:
            return await self._fetch(db, session_id)

    async def require_active(self, raw_id: str) -> ClassSession:
        """Resolve ``raw_id`` and fail unless the session exists and is active."""
        session = await self.get_session(raw_id)
        if not session.is_active:
            raise InvalidState(f"Session {session.id} is not active")
        return session

    async def list_sessions(self, active: Optional[bool] = None) -> List[ClassSession]:
        query = select(ClassSession).order_by(ClassSession.created_at.desc())
        if active is not None:
            query = query.where(ClassSession.is_active.is_(active))
        async with self._db() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def _set_active(self, raw_id: str, active: bool) -> ClassSession:
        session_id = self.resolver.resolve(raw_id)
        try:
            async with self._db() as db:
                await self._fetch(db, session_id)
                # A repeated end or reactivate matches no row
                changed = await db.execute(
                    update(ClassSession)
                    .where(ClassSession.id == session_id, ClassSession.is_active.is_(not active))
                    .values(is_active=active, ended_at=None if active else utcnow())
                )
                if not changed.rowcount:
                    state = "active" if active else "ended"
                    raise InvalidState(f"Session {session_id} is already {state}")
                await db.commit()
                session = await self._fetch(db, session_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Could not update session {session_id}: {e}") from e

        if active:
            self.index.add(session_id)
        else:
            self.index.remove(session_id)
        return session

    async def end_session(self, raw_id: str) -> ClassSession:
        session = await self._set_active(raw_id, False)
        logger.info(f"Session {session.id} ended")
        self.broadcaster.broadcast(session.id, "session-ended", {"sessionId": session.id})
        return session

    async def reactivate_session(self, raw_id: str) -> ClassSession:
        session = await self._set_active(raw_id, True)
        logger.info(f"Session {session.id} reactivated")
        return session

    async def update_settings(
        self,
        raw_id: str,
        auto_merge_doubts: Optional[bool] = None,
        allow_anonymous: Optional[bool] = None,
    ) -> ClassSession:
        session_id = self.resolver.resolve(raw_id)
        values = {}
        if auto_merge_doubts is not None:
            values["auto_merge_doubts"] = auto_merge_doubts
        if allow_anonymous is not None:
            values["allow_anonymous"] = allow_anonymous
        try:
            async with self._db() as db:
                await self._fetch(db, session_id)
                if values:
                    await db.execute(
                        update(ClassSession).where(ClassSession.id == session_id).values(**values)
                    )
                    await db.commit()
                return await self._fetch(db, session_id)
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Could not update settings for {session_id}: {e}") from e
