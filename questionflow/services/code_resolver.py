"""
Session Code Resolver

Students join with a short code (the last six characters of the session id,
shown upper-case).  Instead of scanning every active session per request, the
resolver keeps an index  code -> {session ids}  that the session facade
updates whenever a session becomes active or inactive.

    resolve("ab12cd")  -> "5f0c...ab12cd"   (code, looked up)
    resolve("5f0c...") -> "5f0c..."         (anything not six chars, unchanged)
"""
import logging
import re
from typing import Dict, Iterable, Set

from questionflow.core.errors import AmbiguousCode, NotFound
from questionflow.db.models import CODE_LENGTH, session_code

logger = logging.getLogger("questionflow.resolver")

_CODE_RE = re.compile(r"^[0-9A-Fa-f]{%d}$" % CODE_LENGTH)


def is_session_code(raw_id: str) -> bool:
    return bool(_CODE_RE.match(raw_id))


class CodeIndex:
    """Index of active sessions keyed by their derived short code."""

    def __init__(self):
        self._by_code: Dict[str, Set[str]] = {}

    def add(self, session_id: str) -> None:
        self._by_code.setdefault(session_code(session_id), set()).add(session_id)

    def remove(self, session_id: str) -> None:
        code = session_code(session_id)
        ids = self._by_code.get(code)
        if not ids:
            return
        ids.discard(session_id)
        if not ids:
            del self._by_code[code]

    def rebuild(self, active_session_ids: Iterable[str]) -> None:
        self._by_code.clear()
        for session_id in active_session_ids:
            self.add(session_id)
        logger.info(f"Code index rebuilt with {len(self)} active code(s)")

    def lookup(self, code: str) -> Set[str]:
        return set(self._by_code.get(code.upper(), ()))

    def __len__(self) -> int:
        return len(self._by_code)


class CodeResolver:
    """Maps a raw path identifier (full id or short code) to a session id."""

    def __init__(self, index: CodeIndex):
        self.index = index

    def resolve(self, raw_id: str) -> str:
        raw_id = raw_id.strip()
        if len(raw_id) != CODE_LENGTH:
            return raw_id

        if not is_session_code(raw_id):
            raise NotFound(f"Session not found: {raw_id}")

        matches = self.index.lookup(raw_id)
        if not matches:
            raise NotFound(f"Session not found: {raw_id}")
        if len(matches) > 1:
            logger.warning(f"Code {raw_id.upper()} matches {len(matches)} active sessions")
            raise AmbiguousCode(
                f"Code {raw_id.upper()} matches more than one active session"
            )
        return next(iter(matches))
