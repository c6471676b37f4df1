from __future__ import annotations
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable


class Role(IntEnum):
    VIEWER = 1
    VIP = 2
    MODERATOR = 3
    BROADCASTER = 4


SUBSCRIBER = 'subscriber'

ROLE_NAMES = {
    'viewer': Role.VIEWER,
    'vip': Role.VIP,
    'moderator': Role.MODERATOR,
    'broadcaster': Role.BROADCASTER,
}


@dataclass(frozen=True)
class ChatterTags:
    broadcaster: bool = False
    moderator: bool = False
    vip: bool = False
    subscriber: bool = False

    @classmethod
    def from_chatter(cls, chatter) -> 'ChatterTags':
        return cls(
            broadcaster=bool(getattr(chatter, 'broadcaster', False)),
            moderator=bool(getattr(chatter, 'moderator', False)),
            vip=bool(getattr(chatter, 'vip', False)),
            subscriber=bool(getattr(chatter, 'subscriber', False)),
        )


def chatter_rank(tags: ChatterTags) -> Role:
    if tags.broadcaster:
        return Role.BROADCASTER
    if tags.moderator:
        return Role.MODERATOR
    if tags.vip:
        return Role.VIP
    return Role.VIEWER


def is_allowed(tags: ChatterTags, roles: Iterable[str]) -> bool:
    """Return True when the chatter satisfies any role in ``roles``.

    ``subscriber`` is checked on its own flag; every other name is compared
    against the chatter's rank. Unknown role names never grant access.
    """
    wanted = [str(role).lower() for role in roles or ()]
    if SUBSCRIBER in wanted and tags.subscriber:
        return True
    rank = chatter_rank(tags)
    return any(ROLE_NAMES[r] <= rank for r in wanted if r in ROLE_NAMES)
