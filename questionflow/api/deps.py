"""Service container shared by the HTTP routes and the realtime channel."""
from dataclasses import dataclass

from starlette.requests import HTTPConnection

from questionflow.db.redis_cache import RedisCache
from questionflow.services.broadcaster import RoomBroadcaster
from questionflow.services.confusion import ConfusionAggregator
from questionflow.services.doubt_ledger import DoubtLedger
from questionflow.services.session_facade import SessionFacade


@dataclass
class Services:
    broadcaster: RoomBroadcaster
    facade: SessionFacade
    ledger: DoubtLedger
    confusion: ConfusionAggregator
    cache: RedisCache


def get_services(conn: HTTPConnection) -> Services:
    """FastAPI dependency; works for both Request and WebSocket."""
    return conn.app.state.services
