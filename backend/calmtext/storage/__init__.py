"""
CalmText - Storage Package

- cache: Fast TTL cache tier (in-memory or Redis)
- durable: Relational store (in-memory or PostgreSQL)
- memory: Best-effort conversation memory over the durable store
"""

from .cache import FastCache, InMemoryCache, RedisCache
from .durable import DurableStore, InMemoryDurableStore, PostgresDurableStore
from .memory import ConversationMemory

__all__ = [
    "FastCache",
    "InMemoryCache",
    "RedisCache",
    "DurableStore",
    "InMemoryDurableStore",
    "PostgresDurableStore",
    "ConversationMemory",
]
