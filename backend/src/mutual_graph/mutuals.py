"""Mutual-connection resolution."""
import logging
from typing import Iterable

from .bsky_client import Account
from .errors import ProviderError


logger = logging.getLogger(__name__)


def resolve_mutuals(followers: Iterable[Account], following: Iterable[Account]) -> list[Account]:
    """
    Accounts present in both lists, matched by DID (never by handle).

    Runs in O(n + m). The result keeps follower order and holds each DID once.
    """
    following_ids = {account.did for account in following if account.did}

    mutuals = []
    seen = set()
    for account in followers:
        if account.did and account.did in following_ids and account.did not in seen:
            seen.add(account.did)
            mutuals.append(account)
    return mutuals


class MutualChecker:
    """Pairwise confirmation that two accounts follow each other.

    Unlike resolve_mutuals, which infers mutuality from one account's lists, this
    fetches both accounts' following lists from the provider.
    """

    def __init__(self, client):
        self.client = client

    async def verify_mutual(self, a: Account, b: Account) -> bool:
        try:
            a_follows = await self.client.get_following(a.handle)
            b_follows = await self.client.get_following(b.handle)
        except ProviderError as e:
            logger.warning(f"Could not verify {a.handle} <-> {b.handle}: {e}")
            return False

        a_follows_b = any(account.did == b.did for account in a_follows)
        b_follows_a = any(account.did == a.did for account in b_follows)
        return a_follows_b and b_follows_a
