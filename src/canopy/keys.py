"""Stable opaque keys for item identities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterator

from canopy.errors import IdentityCollision

KeyProvider = Callable[[Any], str]


@dataclass(frozen=True, slots=True)
class NotFound:
    """Result of looking up a key the mapper no longer knows."""

    key: str

    def __bool__(self) -> bool:
        return False


class KeyMapper:
    """Assign one key per known identity.

    Identities are compared with ``==`` through a dict, so two unequal
    identities with colliding ``__hash__`` values still get distinct keys.
    Generated keys come from a counter and are never handed out twice within
    one mapper, even after ``reset``.
    """

    def __init__(self, key_provider: KeyProvider | None = None) -> None:
        self._key_provider = key_provider
        self._id_to_key: dict[Hashable, str] = {}
        self._key_to_id: dict[str, Hashable] = {}
        self._unverified: set[Hashable] = set()
        self._pinned: dict[str, int] = {}
        self._last_key = 0

    def __len__(self) -> int:
        return len(self._id_to_key)

    def __contains__(self, identity: object) -> bool:
        return identity in self._id_to_key

    def __iter__(self) -> Iterator[Hashable]:
        return iter(list(self._id_to_key))

    def key(self, identity: Hashable, item: Any = None) -> str:
        """Return the key for ``identity``, allocating one on first sight.

        Calling this also confirms an identity that ``mark_unverified`` put in
        doubt.
        """
        existing = self._id_to_key.get(identity)
        if existing is not None:
            self._unverified.discard(identity)
            return existing

        key = self._create_key(item)
        holder = self._key_to_id.get(key)
        if holder is not None:
            raise IdentityCollision(identity, f"key {key!r} already belongs to {holder!r}")
        self._id_to_key[identity] = key
        self._key_to_id[key] = identity
        return key

    def key_if_known(self, identity: Hashable) -> str | None:
        return self._id_to_key.get(identity)

    def has(self, key: str) -> bool:
        return key in self._key_to_id

    def get(self, key: str) -> Hashable | NotFound:
        if key not in self._key_to_id:
            return NotFound(key)
        return self._key_to_id[key]

    def remove(self, identity: Hashable) -> bool:
        """Forget ``identity`` unless its key is pinned."""
        key = self._id_to_key.get(identity)
        if key is None or key in self._pinned:
            return False
        del self._id_to_key[identity]
        del self._key_to_id[key]
        self._unverified.discard(identity)
        return True

    def pin(self, key: str) -> bool:
        if key not in self._key_to_id:
            return False
        self._pinned[key] = self._pinned.get(key, 0) + 1
        return True

    def unpin(self, key: str) -> None:
        count = self._pinned.get(key, 0)
        if count <= 1:
            self._pinned.pop(key, None)
        else:
            self._pinned[key] = count - 1

    def is_pinned(self, key: str) -> bool:
        return key in self._pinned

    def mark_unverified(self) -> None:
        self._unverified = set(self._id_to_key)

    def is_verified(self, identity: Hashable) -> bool:
        return identity in self._id_to_key and identity not in self._unverified

    def drop_unverified(self) -> list[Hashable]:
        """Release identities that no fetch confirmed since ``mark_unverified``."""
        dropped = [identity for identity in list(self._unverified) if self.remove(identity)]
        self._unverified.clear()
        return dropped

    def reset(self) -> None:
        self._id_to_key.clear()
        self._key_to_id.clear()
        self._unverified.clear()
        self._pinned.clear()

    def _create_key(self, item: Any) -> str:
        if self._key_provider is not None and item is not None:
            return str(self._key_provider(item))
        self._last_key += 1
        return str(self._last_key)
