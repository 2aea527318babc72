"""Persistence contracts and their MongoDB implementations."""

from .family_stores import (
    ConcurrentModification,
    FamilyStore,
    JoinRequestStore,
    MongoFamilyStore,
    MongoJoinRequestStore,
    MongoUserStore,
    UserStore,
)

__all__ = [
    "ConcurrentModification",
    "FamilyStore",
    "JoinRequestStore",
    "UserStore",
    "MongoFamilyStore",
    "MongoJoinRequestStore",
    "MongoUserStore",
]
