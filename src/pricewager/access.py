"""Single-owner access control.

The owner curates the asset registry and holds the oracle kill switch.
Ownership is transferable; it can never be left empty.
"""

from __future__ import annotations

import logging
from typing import Optional

from pricewager.errors import NotOwner, ValidationError
from pricewager.registry import normalise_identity

logger = logging.getLogger(__name__)


class Ownable:
    """Holds the current owner identity."""

    def __init__(self, owner: str) -> None:
        owner_id = normalise_identity(owner)
        if not owner_id:
            raise ValidationError("Owner identity must not be empty")
        self._owner = owner_id

    @property
    def owner(self) -> str:
        return self._owner

    def is_owner(self, caller: Optional[str]) -> bool:
        return bool(caller) and normalise_identity(caller) == self._owner

    def require_owner(self, caller: Optional[str]) -> None:
        """Raise NotOwner unless caller is the owner."""
        if not self.is_owner(caller):
            raise NotOwner("Caller {} is not the owner".format(caller))

    def transfer_ownership(self, caller: str, new_owner: str) -> str:
        """Hand ownership to new_owner.  Returns the previous owner."""
        self.require_owner(caller)
        new_id = normalise_identity(new_owner)
        if not new_id:
            raise ValidationError("New owner identity must not be empty")

        previous = self._owner
        self._owner = new_id
        logger.warning("Ownership transferred: %s -> %s", previous, new_id)
        return previous

    def checkpoint(self) -> str:
        return self._owner

    def rollback(self, owner: str) -> None:
        self._owner = owner
