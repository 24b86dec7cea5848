import logging
from typing import Optional

from database import Database
from events import ConnectionHub, EventSink
from messages import MessageService
from products import ProductService
from purchase_requests import RequestService
from users import UserService

logger = logging.getLogger(__name__)


class AppContext:
    """
    Everything a request handler needs: the database handle, the event sink
    and the services built on top of them. Opened at process start and closed
    on shutdown by the FastAPI lifespan in main.py.
    """

    def __init__(self, database: Optional[Database] = None, events: Optional[EventSink] = None):
        self.database = database or Database()
        self.events = events if events is not None else ConnectionHub()
        self.users = UserService(self.database)
        self.products = ProductService(self.database, self.events)
        self.requests = RequestService(self.database, self.events)
        self.messages = MessageService(self.database, self.events)

    async def start(self):
        await self.database.connect()
        logger.info("context_started")

    async def close(self):
        if isinstance(self.events, ConnectionHub):
            await self.events.close()
        await self.database.close()
        logger.info("context_closed")
