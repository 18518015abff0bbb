"""Shared Motor client for the job and configuration stores.

The client is created on first use and reads ``MONGODB_URL`` at that
point. Server selection fails after five seconds so an unreachable
database surfaces as ``ServerSelectionTimeoutError`` instead of a hang.
"""

import os

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

DATABASE_NAME = os.getenv("DATABASE_NAME", "formai")
SELECTION_TIMEOUT_MS = 5000

_client: AsyncIOMotorClient | None = None


def _connect() -> AsyncIOMotorClient:
    return AsyncIOMotorClient(
        os.getenv("MONGODB_URL", "mongodb://localhost:27017"),
        serverSelectionTimeoutMS=SELECTION_TIMEOUT_MS,
        connectTimeoutMS=SELECTION_TIMEOUT_MS,
        tz_aware=True,
    )


async def get_database() -> AsyncIOMotorDatabase:
    global _client
    if _client is None:
        _client = _connect()
    return _client[DATABASE_NAME]


async def close_database() -> None:
    global _client
    client, _client = _client, None
    if client is not None:
        client.close()


def set_client(client: AsyncIOMotorClient | None) -> None:
    """Install a client, e.g. mongomock-motor in tests."""
    global _client
    _client = client
