"""MongoDB connection and atomic counters."""

from __future__ import annotations

from typing import Any

from pymongo import MongoClient, ReturnDocument

CONNECT_TIMEOUT_MS = 10_000


def connect(uri: str, database: str) -> Any:
    """Connect to MongoDB, verify the server answers a ping, and return the database."""
    client = MongoClient(
        uri,
        connectTimeoutMS=CONNECT_TIMEOUT_MS,
        serverSelectionTimeoutMS=CONNECT_TIMEOUT_MS,
    )
    try:
        client.admin.command("ping")
    except Exception:
        client.close()
        raise
    return client[database]


def next_sequence_value(database: Any, counter_id: str) -> int:
    """Increment the named counter and return its new value, starting at 1."""
    counters = database["counters"]
    doc = counters.find_one_and_update(
        {"_id": counter_id},
        {"$inc": {"sequence_value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        counters.update_one(
            {"_id": counter_id},
            {"$set": {"sequence_value": 1}},
            upsert=True,
        )
        return 1
    return int(doc["sequence_value"])