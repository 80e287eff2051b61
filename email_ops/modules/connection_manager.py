"""
Connection Manager Module
Opens and releases IMAP/SMTP sessions for one operation or batch
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

from ..utils.config import IMAPConfig, SMTPConfig, ServiceConfig
from .imap_connection import IMAPConnection
from .smtp_connection import SMTPConnection

Session = Union[IMAPConnection, SMTPConnection]


class ConnectionManager:
    """
    Hands out authenticated sessions.

    No retry is attempted: a failed acquisition raises AuthenticationError
    or EmailConnectionError straight away and retrying is up to the caller.
    Prefer the ``inbound()`` / ``outbound()`` context managers, which release
    the session on every exit path.
    """

    def __init__(self, config: ServiceConfig):
        self.config = config
        self.logger = logging.getLogger("ConnectionManager")

    def connect_inbound(self, config: Optional[IMAPConfig] = None) -> IMAPConnection:
        """Blocking variant of acquire_inbound, for code already off the event loop"""
        session = IMAPConnection(config or self.config.imap)
        session.connect()
        return session

    def connect_outbound(self, config: Optional[SMTPConfig] = None) -> SMTPConnection:
        """Blocking variant of acquire_outbound"""
        session = SMTPConnection(config or self.config.smtp)
        session.connect()
        return session

    def close(self, session: Optional[Session]):
        if session is not None:
            session.disconnect()

    async def acquire_inbound(self, config: Optional[IMAPConfig] = None) -> IMAPConnection:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.connect_inbound, config)

    async def acquire_outbound(self, config: Optional[SMTPConfig] = None) -> SMTPConnection:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.connect_outbound, config)

    async def release(self, session: Optional[Session]):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.close, session)

    @asynccontextmanager
    async def inbound(self, config: Optional[IMAPConfig] = None) -> AsyncIterator[IMAPConnection]:
        session = await self.acquire_inbound(config)
        try:
            yield session
        finally:
            await self.release(session)

    @asynccontextmanager
    async def outbound(self, config: Optional[SMTPConfig] = None) -> AsyncIterator[SMTPConnection]:
        session = await self.acquire_outbound(config)
        try:
            yield session
        finally:
            await self.release(session)
